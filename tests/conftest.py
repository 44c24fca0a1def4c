"""
Shared pytest fixtures for the drop notifier tests.

These fixtures provide consistent test data and fresh state for every test.
"""

import pytest
from pathlib import Path

from fanout.dispatcher import FanoutDispatcher
from shared.channels import NotificationChannels, RecordingChannel
from shared.data_store import DataStore
from subscriptions.service import SubscriptionService


@pytest.fixture
def data_dir() -> Path:
    """Path to the fixture data directory."""
    return Path(__file__).parent.parent / "data"


@pytest.fixture
def data_store(data_dir: Path) -> DataStore:
    """
    Fresh DataStore instance for each test.

    Uses the real JSON fixtures but creates a new instance
    so tests don't interfere with each other.
    """
    return DataStore(data_dir=data_dir)


@pytest.fixture
def telegram() -> RecordingChannel:
    """Fresh recording Telegram channel for each test."""
    return RecordingChannel()


@pytest.fixture
def channels(telegram: RecordingChannel) -> NotificationChannels:
    """Channels facade wrapping the recording Telegram channel."""
    return NotificationChannels(telegram)


@pytest.fixture
def subscription_service(data_store: DataStore, channels: NotificationChannels) -> SubscriptionService:
    return SubscriptionService(stores=data_store, ledger=data_store, channels=channels)


@pytest.fixture
def dispatcher(data_store: DataStore, channels: NotificationChannels) -> FanoutDispatcher:
    return FanoutDispatcher(
        stores=data_store,
        ledger=data_store,
        drops=data_store,
        channels=channels,
    )


@pytest.fixture
def make_update():
    """Factory for Telegram updates carrying a text message."""

    def _make_update(text, chat_id=12345, username="moon_fan", update_id=1) -> dict:
        message = {
            "message_id": 10,
            "date": 1760000000,
            "chat": {"id": chat_id, "type": "private"},
        }
        if username is not None:
            message["chat"]["username"] = username
        if text is not None:
            message["text"] = text
        return {"update_id": update_id, "message": message}

    return _make_update


# =============================================================================
# Store Fixtures
# =============================================================================

@pytest.fixture
def lunargear_store_id() -> str:
    """Store ID for Lunar Gear (slug 'lunargear', subscribers 111 and 222)."""
    return "store-001"


@pytest.fixture
def nightmarket_store_id() -> str:
    """Store ID for Night Market Ceramics (subscribers 111, 333 and 444)."""
    return "store-002"


@pytest.fixture
def quietpress_store_id() -> str:
    """Store ID for Quiet Press (no subscribers)."""
    return "store-003"


# =============================================================================
# Drop Fixtures
# =============================================================================

@pytest.fixture
def jacket_drop_id() -> str:
    """Unpublished Lunar Gear drop 'Moonwalker Jacket' at $129.00."""
    return "drop-001"


@pytest.fixture
def glaze_drop_id() -> str:
    """Unpublished Night Market drop with three subscribers to reach."""
    return "drop-002"


@pytest.fixture
def zine_drop_id() -> str:
    """Unpublished Quiet Press drop; the store has no subscribers."""
    return "drop-003"


@pytest.fixture
def published_drop_id() -> str:
    """Lunar Gear drop that was already published."""
    return "drop-004"
