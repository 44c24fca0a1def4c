"""
Domain models for the drop notifier.

Stores and drops are owned by the surrounding CRUD system; the core only reads
them (and sets a drop's publication timestamp). Subscriptions are the core's
own entity.

Design decisions:
- Using Pydantic for validation and serialization
- Platform is a closed enum; new chat platforms are added as new members
- Price is an opaque display string, never parsed
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field, ConfigDict


# =============================================================================
# Enums
# =============================================================================

class Platform(str, Enum):
    """Chat platforms a subscriber can be reached on."""
    TELEGRAM = "telegram"


# =============================================================================
# Catalog (read-only to the core)
# =============================================================================

class Store(BaseModel):
    """
    A shop that publishes drops.

    The slug is the stable public reference used in chat commands and
    deep links.
    """
    id: str = Field(..., description="Unique store identifier")
    name: str = Field(..., description="Human readable store name")
    slug: str = Field(..., min_length=1, description="Unique public reference")
    owner_id: str = Field(..., description="Owning user")
    description: str = Field(default="")
    image_url: Optional[str] = Field(default=None)
    tags: list[str] = Field(default_factory=list)


class Drop(BaseModel):
    """
    A limited product release belonging to one store.

    `published_at` is None until the drop has been fanned out.
    """
    id: str = Field(..., description="Unique drop identifier")
    store_id: str = Field(..., description="Reference to the owning store")
    title: str = Field(..., min_length=1)
    description: str = Field(default="")
    image_url: str = Field(..., description="Image sent with the notification")
    price: str = Field(..., description="Display price, e.g. '$129.00'")
    product_url: str = Field(..., description="Purchase link")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    published_at: Optional[datetime] = Field(default=None)

    @property
    def is_published(self) -> bool:
        return self.published_at is not None


# =============================================================================
# Subscriptions
# =============================================================================

SubscriptionKey = tuple[str, Platform, str]


class Subscription(BaseModel):
    """
    One external identity's interest in one store on one platform.

    (store_id, platform, external_user_id) is unique across the ledger.
    """
    id: str = Field(default_factory=lambda: str(uuid4()))
    store_id: str = Field(..., description="Reference to store")
    platform: Platform = Field(default=Platform.TELEGRAM)
    external_user_id: str = Field(..., description="Platform user/chat id")
    display_name: Optional[str] = Field(
        default=None,
        description="Username snapshot taken at (re)subscribe time"
    )
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    model_config = ConfigDict(frozen=True)

    @property
    def key(self) -> SubscriptionKey:
        return (self.store_id, self.platform, self.external_user_id)
