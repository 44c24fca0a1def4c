"""
JSON-backed data store for the drop notifier.

This module provides the in-process implementation of the collaborator
interfaces in `shared.ledger`. Stores, drops and initial subscriptions are
read from JSON fixture files; all writes stay in memory.

Design decisions:
- Fixtures are loaded lazily on first access
- Writes update in-memory state only (a durable store replaces this class)
- Subscriptions are a dict keyed by (store_id, platform, external_user_id),
  mutated under a lock so upsert and delete are atomic
- No module-level instance: callers construct and inject their own store
"""

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from shared.errors import PersistenceError
from shared.models import Drop, Platform, Store, Subscription, SubscriptionKey


class DataStore:
    """
    Central data store that loads JSON fixtures and owns the subscription ledger.

    Implements `StoreDirectory`, `SubscriptionLedger` and `DropRepository`.
    """

    def __init__(self, data_dir: Optional[Path] = None):
        """
        Initialize the data store.

        Args:
            data_dir: Path to the directory containing JSON fixtures.
                     Defaults to ./data relative to project root.
        """
        if data_dir is None:
            data_dir = Path(__file__).parent.parent / "data"

        self.data_dir = Path(data_dir)

        self._lock = threading.Lock()

        # In-memory caches - loaded lazily
        self._stores: Optional[dict[str, Store]] = None
        self._drops: Optional[dict[str, Drop]] = None
        self._subscriptions: Optional[dict[SubscriptionKey, Subscription]] = None

    # =========================================================================
    # Data Loading (lazy)
    # =========================================================================

    def _load_json(self, filename: str) -> list[dict]:
        """Load a JSON fixture file; a missing file is an empty collection."""
        filepath = self.data_dir / filename
        if not filepath.exists():
            return []
        try:
            with open(filepath, "r") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Could not load {filepath}: {e}") from e

    def _parse_records(self, model, records: list[dict], filename: str) -> list:
        """Build models from fixture records; a malformed record is a storage failure."""
        try:
            return [model(**record) for record in records]
        except (TypeError, ValidationError) as e:
            raise PersistenceError(f"Invalid record in {filename}: {e}") from e

    def _ensure_stores_loaded(self):
        if self._stores is None:
            stores = self._parse_records(Store, self._load_json("stores.json"), "stores.json")
            self._stores = {s.id: s for s in stores}

    def _ensure_drops_loaded(self):
        if self._drops is None:
            drops = self._parse_records(Drop, self._load_json("drops.json"), "drops.json")
            self._drops = {d.id: d for d in drops}

    def _ensure_subscriptions_loaded(self):
        if self._subscriptions is None:
            subscriptions = self._parse_records(
                Subscription, self._load_json("subscriptions.json"), "subscriptions.json",
            )
            self._subscriptions = {s.key: s for s in subscriptions}

    # =========================================================================
    # Store Operations
    # =========================================================================

    def find_store_by_slug(self, slug: str) -> Optional[Store]:
        """Get a store by its public slug."""
        self._ensure_stores_loaded()
        for store in self._stores.values():
            if store.slug == slug:
                return store
        return None

    def find_store_by_id(self, store_id: str) -> Optional[Store]:
        """Get a store by ID."""
        self._ensure_stores_loaded()
        return self._stores.get(store_id)

    def get_stores(self) -> list[Store]:
        """Get all stores."""
        self._ensure_stores_loaded()
        return list(self._stores.values())

    def add_store(self, store: Store) -> Store:
        """
        Register a store (in-memory only).

        Raises:
            ValueError: If another store already uses the slug.
        """
        self._ensure_stores_loaded()
        existing = self.find_store_by_slug(store.slug)
        if existing and existing.id != store.id:
            raise ValueError(f"Slug already taken: {store.slug}")
        self._stores[store.id] = store
        return store

    # =========================================================================
    # Drop Operations
    # =========================================================================

    def get_drop(self, drop_id: str) -> Optional[Drop]:
        """Get a drop by ID."""
        self._ensure_drops_loaded()
        return self._drops.get(drop_id)

    def get_drops_by_store(self, store_id: str) -> list[Drop]:
        """Get all drops for a specific store."""
        self._ensure_drops_loaded()
        return [d for d in self._drops.values() if d.store_id == store_id]

    def add_drop(self, drop: Drop) -> Drop:
        """Register a drop (in-memory only). Creating a drop never fans out."""
        self._ensure_drops_loaded()
        self._drops[drop.id] = drop
        return drop

    def mark_drop_published(self, drop_id: str, timestamp: datetime) -> Optional[Drop]:
        """
        Set a drop's publication timestamp.

        Returns the updated drop or None if not found.
        """
        self._ensure_drops_loaded()
        drop = self._drops.get(drop_id)
        if not drop:
            return None
        updated = drop.model_copy(update={"published_at": timestamp})
        self._drops[drop_id] = updated
        return updated

    # =========================================================================
    # Subscription Ledger
    # =========================================================================

    def upsert_subscription(
        self,
        store_id: str,
        platform: Platform,
        external_user_id: str,
        display_name: Optional[str],
    ) -> tuple[Subscription, bool]:
        """
        Create a subscription, or refresh the display name of an existing one.

        The lookup and the write happen under one lock acquisition, so
        duplicate concurrent calls always converge on a single record.

        Returns:
            Tuple of (subscription, created)
        """
        key = (store_id, Platform(platform), external_user_id)
        with self._lock:
            self._ensure_subscriptions_loaded()
            existing = self._subscriptions.get(key)
            if existing is not None:
                refreshed = existing.model_copy(update={
                    "display_name": display_name,
                    "updated_at": datetime.utcnow(),
                })
                self._subscriptions[key] = refreshed
                return refreshed, False

            created = Subscription(
                store_id=store_id,
                platform=platform,
                external_user_id=external_user_id,
                display_name=display_name,
            )
            self._subscriptions[key] = created
            return created, True

    def delete_subscriptions(
        self,
        store_id: str,
        platform: Platform,
        external_user_id: str,
    ) -> int:
        """Delete the subscription for the key if present; returns the count removed."""
        key = (store_id, Platform(platform), external_user_id)
        with self._lock:
            self._ensure_subscriptions_loaded()
            removed = self._subscriptions.pop(key, None)
        return 1 if removed is not None else 0

    def list_subscriptions(self, store_id: str, platform: Platform) -> list[Subscription]:
        """
        Get every subscription of a store on one platform.

        This is the subscriber list the fan-out dispatcher broadcasts to.
        """
        with self._lock:
            self._ensure_subscriptions_loaded()
            return [
                s for s in self._subscriptions.values()
                if s.store_id == store_id and s.platform == platform
            ]

    def get_subscription(
        self,
        store_id: str,
        platform: Platform,
        external_user_id: str,
    ) -> Optional[Subscription]:
        """Get a single subscription by its key."""
        with self._lock:
            self._ensure_subscriptions_loaded()
            return self._subscriptions.get((store_id, Platform(platform), external_user_id))

    def count_subscriptions(self, store_id: Optional[str] = None) -> int:
        """Count subscriptions, optionally for one store."""
        with self._lock:
            self._ensure_subscriptions_loaded()
            if store_id is None:
                return len(self._subscriptions)
            return sum(1 for s in self._subscriptions.values() if s.store_id == store_id)

    # =========================================================================
    # Utility Methods
    # =========================================================================

    def reload(self):
        """
        Force reload all data from JSON files.

        Discards in-memory writes.
        """
        with self._lock:
            self._stores = None
            self._drops = None
            self._subscriptions = None
