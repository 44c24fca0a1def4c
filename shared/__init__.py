"""
Shared infrastructure for the drop notifier.

This package contains code used by both the subscription service and the
fan-out dispatcher:
- Domain models (Store, Drop, Subscription, Platform)
- Collaborator interfaces and the JSON-backed data store
- Outbound chat channels
- Message templates
- Configuration and error taxonomy
"""

from shared.models import Drop, Platform, Store, Subscription
from shared.data_store import DataStore
from shared.channels import NotificationChannels, RecordingChannel, SendResult, TelegramChannel
from shared.errors import (
    DeliveryError,
    DeliveryFailure,
    DropNotifierError,
    NotFoundError,
    ParseError,
    PersistenceError,
)

__all__ = [
    "Drop",
    "Platform",
    "Store",
    "Subscription",
    "DataStore",
    "NotificationChannels",
    "RecordingChannel",
    "SendResult",
    "TelegramChannel",
    "DeliveryError",
    "DeliveryFailure",
    "DropNotifierError",
    "NotFoundError",
    "ParseError",
    "PersistenceError",
]
