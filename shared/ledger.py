"""
Collaborator interfaces the core depends on.

The subscription and fan-out services only talk to these protocols, so any
durable store (SQL, key-value, an ORM) can stand in for the in-memory
`DataStore` as long as it honours the contracts below.

Contracts:
- Lookups return None for "not found"; they never raise for it.
- `upsert_subscription` is atomic on (store_id, platform, external_user_id):
  concurrent duplicate calls converge on one record. Implementations must use
  a native upsert or compare-and-swap, never read-then-write.
- `delete_subscriptions` removes zero or more records and never fails on
  "nothing to delete".
- Any storage failure is raised as `shared.errors.PersistenceError`.
"""

from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from shared.models import Drop, Platform, Store, Subscription


@runtime_checkable
class StoreDirectory(Protocol):
    """Read access to stores."""

    def find_store_by_slug(self, slug: str) -> Optional[Store]:
        ...

    def find_store_by_id(self, store_id: str) -> Optional[Store]:
        ...


@runtime_checkable
class SubscriptionLedger(Protocol):
    """Keyed store of subscription records."""

    def upsert_subscription(
        self,
        store_id: str,
        platform: Platform,
        external_user_id: str,
        display_name: Optional[str],
    ) -> tuple[Subscription, bool]:
        """Create or refresh; returns the record and whether it was created."""
        ...

    def delete_subscriptions(
        self,
        store_id: str,
        platform: Platform,
        external_user_id: str,
    ) -> int:
        """Delete matching records; returns how many were removed."""
        ...

    def list_subscriptions(self, store_id: str, platform: Platform) -> list[Subscription]:
        ...


@runtime_checkable
class DropRepository(Protocol):
    """Read access to drops plus the single write the core performs."""

    def get_drop(self, drop_id: str) -> Optional[Drop]:
        ...

    def mark_drop_published(self, drop_id: str, timestamp: datetime) -> Optional[Drop]:
        ...
