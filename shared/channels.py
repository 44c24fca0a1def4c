"""
Outbound chat channels.

A channel sends one text message, or one image with a caption, to one
recipient on one platform and reports the result. Channels never retry;
retry policy belongs to whoever calls them.

Channels:
- TelegramChannel: Telegram Bot API over httpx
- RecordingChannel: in-process channel that logs and records sends, with
  per-recipient failure simulation for tests and dry runs

Design decisions:
- Every send returns a SendResult; failures carry a DeliveryFailure reason
  instead of raising
- Channels track nothing about subscriptions; they only know recipients
- NotificationChannels maps a Platform to its channel
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

from shared.errors import DeliveryError, DeliveryFailure
from shared.models import Platform
from shared.templates import CAPTION_PARSE_MODE

logger = logging.getLogger("notifications")


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"


@dataclass
class SendResult:
    """
    Result of a single send attempt.

    Captures success/failure and metadata for debugging and testing.
    """
    success: bool
    platform: Platform
    recipient: str
    kind: MessageKind
    body: str
    image_ref: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)
    failure: Optional[DeliveryFailure] = None
    error: Optional[str] = None
    retry_after: Optional[int] = None

    @property
    def failure_reason(self) -> Optional[DeliveryFailure]:
        """Why the send failed; a failure reported without a reason counts as UNEXPECTED."""
        if self.success:
            return None
        return self.failure or DeliveryFailure.UNEXPECTED

    def __str__(self) -> str:
        status = "✓" if self.success else "✗"
        label = f"{self.platform.value.upper()} {self.kind.value.upper()}"
        if self.success:
            return f"{status} {label} to {self.recipient}: {self.body[:50]}"
        return f"{status} {label} to {self.recipient}: {self.failure_reason.value} ({self.error})"


@runtime_checkable
class Notifier(Protocol):
    """A channel able to reach recipients on one platform."""

    platform: Platform

    async def send_text(self, recipient_id: str, text: str) -> SendResult:
        ...

    async def send_image(self, recipient_id: str, image_ref: str, caption: str) -> SendResult:
        ...


# =============================================================================
# Telegram
# =============================================================================

_INVALID_RECIPIENT_MARKERS = (
    "chat not found",
    "user not found",
    "bot was blocked",
    "user is deactivated",
    "bot can't initiate conversation",
)


class TelegramChannel:
    """
    Telegram Bot API channel.

    Wraps `sendMessage` and `sendPhoto`. The httpx client is injectable so
    tests can swap in an `httpx.MockTransport`.
    """

    platform = Platform.TELEGRAM

    def __init__(
        self,
        bot_token: Optional[str],
        api_base: str = "https://api.telegram.org",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the Telegram channel.

        Args:
            bot_token: Bot API token; sends fail with NOT_CONFIGURED without it
            api_base: Bot API base URL
            timeout_seconds: Per-request timeout
            client: Preconfigured client; one is created when omitted
        """
        self._bot_token = bot_token
        self._api_base = api_base.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    @property
    def is_configured(self) -> bool:
        return bool(self._bot_token)

    async def send_text(self, recipient_id: str, text: str) -> SendResult:
        """Send a plain text message (`sendMessage`)."""
        return await self._send(
            "sendMessage",
            {"chat_id": recipient_id, "text": text},
            recipient_id,
            MessageKind.TEXT,
            text,
        )

    async def send_image(self, recipient_id: str, image_ref: str, caption: str) -> SendResult:
        """Send a photo with an HTML-formatted caption (`sendPhoto`)."""
        return await self._send(
            "sendPhoto",
            {
                "chat_id": recipient_id,
                "photo": image_ref,
                "caption": caption,
                "parse_mode": CAPTION_PARSE_MODE,
            },
            recipient_id,
            MessageKind.IMAGE,
            caption,
            image_ref=image_ref,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(
        self,
        method: str,
        payload: dict[str, Any],
        recipient_id: str,
        kind: MessageKind,
        body: str,
        image_ref: Optional[str] = None,
    ) -> SendResult:
        try:
            await self._call(method, payload)
        except DeliveryError as e:
            logger.warning(
                f"[TELEGRAM FAILED] {method} to {recipient_id} | {e.failure.value}: {e.detail}"
            )
            return SendResult(
                success=False,
                platform=self.platform,
                recipient=recipient_id,
                kind=kind,
                body=body,
                image_ref=image_ref,
                failure=e.failure,
                error=e.detail,
                retry_after=e.retry_after,
            )

        logger.info(f"[TELEGRAM] {method} to {recipient_id}")
        return SendResult(
            success=True,
            platform=self.platform,
            recipient=recipient_id,
            kind=kind,
            body=body,
            image_ref=image_ref,
        )

    async def _call(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Invoke one Bot API method.

        Raises:
            DeliveryError: With the failure classified from the transport
                error or the API's error reply
        """
        if not self._bot_token:
            raise DeliveryError(DeliveryFailure.NOT_CONFIGURED, "Telegram bot token not configured")

        # The token is part of the URL path; never log the URL itself
        url = f"{self._api_base}/bot{self._bot_token}/{method}"
        try:
            response = await self._client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise DeliveryError(DeliveryFailure.TIMEOUT, type(e).__name__) from e
        except httpx.TransportError as e:
            raise DeliveryError(DeliveryFailure.NETWORK, type(e).__name__) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code == 200 and data.get("ok"):
            return data.get("result") or {}

        raise classify_api_error(response.status_code, data)


def classify_api_error(status_code: int, data: dict[str, Any]) -> DeliveryError:
    """Map a Bot API error reply onto the delivery failure taxonomy."""
    description = str(data.get("description") or f"HTTP {status_code}")
    lowered = description.lower()

    if status_code == 429:
        retry_after = (data.get("parameters") or {}).get("retry_after")
        return DeliveryError(DeliveryFailure.RATE_LIMITED, description, retry_after=retry_after)
    if status_code == 403 or any(marker in lowered for marker in _INVALID_RECIPIENT_MARKERS):
        return DeliveryError(DeliveryFailure.INVALID_RECIPIENT, description)
    if status_code >= 500 or status_code == 200:
        # A 200 without "ok" is a malformed reply
        return DeliveryError(DeliveryFailure.SERVER_ERROR, description)
    return DeliveryError(DeliveryFailure.REJECTED, description)


# =============================================================================
# Recording channel
# =============================================================================

class RecordingChannel:
    """
    In-process channel.

    Logs sends to console and tracks them for test assertions.
    Specific recipients can be made to fail with a chosen reason.
    """

    def __init__(
        self,
        platform: Platform = Platform.TELEGRAM,
        fail_for: Optional[dict[str, DeliveryFailure]] = None,
    ):
        """
        Initialize the recording channel.

        Args:
            platform: Platform this channel pretends to reach
            fail_for: Recipient id -> failure reason for simulated failures
        """
        self.platform = platform
        self.fail_for: dict[str, DeliveryFailure] = dict(fail_for or {})
        self.sent_messages: list[SendResult] = []

    async def send_text(self, recipient_id: str, text: str) -> SendResult:
        return self._record(recipient_id, MessageKind.TEXT, text)

    async def send_image(self, recipient_id: str, image_ref: str, caption: str) -> SendResult:
        return self._record(recipient_id, MessageKind.IMAGE, caption, image_ref=image_ref)

    def _record(
        self,
        recipient_id: str,
        kind: MessageKind,
        body: str,
        image_ref: Optional[str] = None,
    ) -> SendResult:
        failure = self.fail_for.get(recipient_id)
        if failure is not None:
            result = SendResult(
                success=False,
                platform=self.platform,
                recipient=recipient_id,
                kind=kind,
                body=body,
                image_ref=image_ref,
                failure=failure,
                error=f"Simulated {failure.value} failure",
            )
            logger.error(f"[{self.platform.value.upper()} FAILED] To: {recipient_id} | Error: {result.error}")
        else:
            result = SendResult(
                success=True,
                platform=self.platform,
                recipient=recipient_id,
                kind=kind,
                body=body,
                image_ref=image_ref,
            )
            logger.info(f"[{self.platform.value.upper()} {kind.value.upper()}] To: {recipient_id}")
            logger.debug(f"[BODY] {body}")

        self.sent_messages.append(result)
        return result

    def get_sent_count(self) -> int:
        """Get the number of messages sent (for testing)."""
        return len(self.sent_messages)

    def get_successful_sends(self) -> list[SendResult]:
        """Get all successful sends."""
        return [m for m in self.sent_messages if m.success]

    def clear_history(self):
        """Clear sent message history (useful between tests)."""
        self.sent_messages.clear()

    def find_message_to(self, recipient: str) -> Optional[SendResult]:
        """Find the most recent message sent to a specific recipient."""
        for msg in reversed(self.sent_messages):
            if msg.recipient == recipient:
                return msg
        return None


# =============================================================================
# Facade
# =============================================================================

class NotificationChannels:
    """
    Registry of channels by platform.

    The subscription service and the fan-out dispatcher both resolve the
    channel for a subscriber's platform through this facade.
    """

    def __init__(self, *notifiers: Notifier):
        self._notifiers: dict[Platform, Notifier] = {}
        for notifier in notifiers:
            self.register(notifier)

    def register(self, notifier: Notifier) -> None:
        self._notifiers[Platform(notifier.platform)] = notifier

    def get(self, platform: Platform) -> Notifier:
        """
        Get the channel for a platform.

        Raises:
            ValueError: If no channel is registered for the platform
        """
        notifier = self._notifiers.get(Platform(platform))
        if notifier is None:
            raise ValueError(f"Unknown channel: {platform}")
        return notifier

    @property
    def platforms(self) -> list[Platform]:
        return list(self._notifiers)

    async def send_text(self, platform: Platform, recipient_id: str, text: str) -> SendResult:
        return await self.get(platform).send_text(recipient_id, text)

    async def send_image(
        self,
        platform: Platform,
        recipient_id: str,
        image_ref: str,
        caption: str,
    ) -> SendResult:
        return await self.get(platform).send_image(recipient_id, image_ref, caption)

    async def aclose(self) -> None:
        """Close channels that hold network resources."""
        for notifier in self._notifiers.values():
            close = getattr(notifier, "aclose", None)
            if close is not None:
                await close()
