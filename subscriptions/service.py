"""
Subscription service.

Handles one inbound chat event at a time: a parsed intent plus the sender's
identity becomes at most one ledger mutation and at most one reply to the
sender.

Design decisions:
- Collaborators are injected; the service holds no global state
- Store lookups by slug: an unknown slug is answered with a "store not found"
  reply and leaves the ledger untouched
- Subscribe is an atomic upsert, unsubscribe a delete-by-key; both idempotent
- Reply failures are logged and reported, never turned into ledger rollbacks
- Nothing raised while handling a webhook escapes `handle_update`; the caller
  always gets a WebhookAck
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel

from shared.channels import NotificationChannels, SendResult
from shared.errors import ParseError, PersistenceError
from shared.ledger import StoreDirectory, SubscriptionLedger
from shared.models import Platform
from shared.templates import MessageType, render_message
from subscriptions.commands import (
    CommandKind,
    DeepLinkSubscribe,
    Help,
    InboundMessage,
    Intent,
    NoOp,
    ParsedWebhook,
    Subscribe,
    Unsubscribe,
    UsageError,
    parse_webhook,
)

logger = logging.getLogger("subscription_service")


class HandleOutcome(str, Enum):
    """What handling a single chat event did."""
    SUBSCRIBED = "subscribed"          # New subscription created
    REFRESHED = "refreshed"            # Existing subscription, display name refreshed
    UNSUBSCRIBED = "unsubscribed"
    STORE_NOT_FOUND = "store_not_found"
    HELP_SENT = "help_sent"
    USAGE_SENT = "usage_sent"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass
class HandleResult:
    """Outcome of one handler call and the reply it sent, if any."""
    outcome: HandleOutcome
    reply: Optional[SendResult] = None

    @property
    def reply_delivered(self) -> Optional[bool]:
        return self.reply.success if self.reply is not None else None


class WebhookAck(BaseModel):
    """
    Acknowledgment returned for every inbound webhook.

    `ok` is an internal success flag for logging; the chat platform only
    needs the prompt response.
    """
    ok: bool
    intent: Optional[str] = None
    outcome: Optional[HandleOutcome] = None
    reply_delivered: Optional[bool] = None


_USAGE_MESSAGES = {
    CommandKind.SUBSCRIBE: MessageType.SUBSCRIBE_USAGE,
    CommandKind.UNSUBSCRIBE: MessageType.UNSUBSCRIBE_USAGE,
}


class SubscriptionService:
    """
    Orchestrates the command parser, the subscription ledger and the
    notifier for inbound chat events.

    Example:
        service = SubscriptionService(stores=data_store, ledger=data_store,
                                      channels=NotificationChannels(telegram))
        ack = await service.handle_inbound_webhook(request_body)
    """

    def __init__(
        self,
        stores: StoreDirectory,
        ledger: SubscriptionLedger,
        channels: NotificationChannels,
        platform: Platform = Platform.TELEGRAM,
    ):
        self.stores = stores
        self.ledger = ledger
        self.channels = channels
        self.platform = platform

    # =========================================================================
    # Webhook entry points
    # =========================================================================

    async def handle_inbound_webhook(self, raw: Union[bytes, str, dict[str, Any]]) -> WebhookAck:
        """Parse and fully handle one raw webhook update."""
        try:
            parsed = parse_webhook(raw)
        except ParseError as e:
            logger.info(f"Ignoring unparseable update: {e}")
            return WebhookAck(ok=False, outcome=HandleOutcome.IGNORED)
        return await self.handle_update(parsed)

    async def handle_update(self, parsed: ParsedWebhook) -> WebhookAck:
        """Handle an already parsed update; never raises."""
        intent = parsed.intent
        sender_id = parsed.sender.sender_id
        try:
            result = await self.handle_intent(intent, parsed.sender)
        except PersistenceError as e:
            logger.error(f"Ledger failure handling {intent.kind} from {sender_id}: {e}")
            return WebhookAck(ok=False, intent=intent.kind, outcome=HandleOutcome.FAILED)
        except Exception:
            logger.exception(f"Unexpected failure handling {intent.kind} from {sender_id}")
            return WebhookAck(ok=False, intent=intent.kind, outcome=HandleOutcome.FAILED)

        logger.info(
            f"Handled {intent.kind} from {sender_id}: "
            f"outcome={result.outcome.value}, reply_delivered={result.reply_delivered}"
        )
        return WebhookAck(
            ok=True,
            intent=intent.kind,
            outcome=result.outcome,
            reply_delivered=result.reply_delivered,
        )

    async def handle_intent(self, intent: Intent, sender: InboundMessage) -> HandleResult:
        """Route a parsed intent to its handler."""
        if isinstance(intent, DeepLinkSubscribe):
            return await self.handle_deep_link_subscribe(intent.slug, sender.sender_id, sender.sender_name)
        if isinstance(intent, Subscribe):
            return await self.handle_subscribe(intent.slug, sender.sender_id, sender.sender_name)
        if isinstance(intent, Unsubscribe):
            return await self.handle_unsubscribe(intent.slug, sender.sender_id)
        if isinstance(intent, Help):
            return await self.handle_help(sender.sender_id)
        if isinstance(intent, UsageError):
            return await self.handle_usage_error(intent.command, sender.sender_id)
        if isinstance(intent, NoOp):
            return HandleResult(HandleOutcome.IGNORED)
        raise TypeError(f"Unknown intent: {intent!r}")

    # =========================================================================
    # Handlers
    # =========================================================================

    async def handle_subscribe(
        self,
        slug: str,
        sender_id: str,
        sender_name: Optional[str] = None,
    ) -> HandleResult:
        """
        Subscribe the sender to the store with this slug.

        Re-subscribing only refreshes the stored display name.
        """
        store = self.stores.find_store_by_slug(slug)
        if store is None:
            return await self._store_not_found(slug, sender_id)

        subscription, created = self.ledger.upsert_subscription(
            store.id, self.platform, sender_id, sender_name,
        )
        logger.info(
            f"{'Created' if created else 'Refreshed'} subscription "
            f"{subscription.id}: store={store.slug}, user={sender_id}"
        )

        reply = await self._reply(sender_id, render_message(MessageType.SUBSCRIBED, store_name=store.name))
        outcome = HandleOutcome.SUBSCRIBED if created else HandleOutcome.REFRESHED
        return HandleResult(outcome, reply)

    async def handle_deep_link_subscribe(
        self,
        slug: str,
        sender_id: str,
        sender_name: Optional[str] = None,
    ) -> HandleResult:
        """Subscribe via a `/start subscribe_<slug>` deep link; same effect as /subscribe."""
        logger.debug(f"Deep link subscribe: store={slug}, user={sender_id}")
        return await self.handle_subscribe(slug, sender_id, sender_name)

    async def handle_unsubscribe(self, slug: str, sender_id: str) -> HandleResult:
        """
        Remove the sender's subscription to the store with this slug.

        Unsubscribing without a subscription is not an error.
        """
        store = self.stores.find_store_by_slug(slug)
        if store is None:
            return await self._store_not_found(slug, sender_id)

        removed = self.ledger.delete_subscriptions(store.id, self.platform, sender_id)
        logger.info(f"Unsubscribed: store={store.slug}, user={sender_id}, removed={removed}")

        reply = await self._reply(sender_id, render_message(MessageType.UNSUBSCRIBED, store_name=store.name))
        return HandleResult(HandleOutcome.UNSUBSCRIBED, reply)

    async def handle_help(self, sender_id: str) -> HandleResult:
        reply = await self._reply(sender_id, render_message(MessageType.HELP))
        return HandleResult(HandleOutcome.HELP_SENT, reply)

    async def handle_usage_error(self, command: CommandKind, sender_id: str) -> HandleResult:
        """Answer a command sent without its argument with a usage hint."""
        logger.info(f"Usage hint for /{command.value} sent to {sender_id}")
        reply = await self._reply(sender_id, render_message(_USAGE_MESSAGES[command]))
        return HandleResult(HandleOutcome.USAGE_SENT, reply)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _store_not_found(self, slug: str, sender_id: str) -> HandleResult:
        logger.info(f"Store not found: {slug} (requested by {sender_id})")
        reply = await self._reply(sender_id, render_message(MessageType.STORE_NOT_FOUND, slug=slug))
        return HandleResult(HandleOutcome.STORE_NOT_FOUND, reply)

    async def _reply(self, sender_id: str, text: str) -> SendResult:
        result = await self.channels.send_text(self.platform, sender_id, text)
        if not result.success:
            logger.warning(
                f"Reply to {sender_id} not delivered: {result.failure_reason.value} ({result.error})"
            )
        return result
