"""
Fan-out dispatcher.

Broadcasts a published drop to every subscriber of its store.

Design decisions:
- One send per subscriber, issued concurrently; at most `max_concurrency`
  sends are in flight
- Every recipient yields its own RecipientResult; one failure never affects
  its siblings
- The drop is marked published after all sends settle, whatever their results
- An optional overall timeout abandons sends that have not started yet and
  cancels the ones in flight; nothing is retried here
- The subscriber list is required: if it cannot be read the invocation fails
  with zero sends attempted and the drop stays unpublished
- Calling publish twice re-sends; deciding whether to re-publish is the
  caller's job
"""

import asyncio
import logging
from datetime import datetime
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from shared.channels import NotificationChannels
from shared.errors import DeliveryFailure, NotFoundError, PersistenceError
from shared.ledger import DropRepository, StoreDirectory, SubscriptionLedger
from shared.models import Drop, Platform, Subscription
from shared.templates import render_drop_caption

logger = logging.getLogger("fanout_dispatcher")


class RecipientResult(BaseModel):
    """Delivery result for one subscriber."""
    recipient: str
    platform: Platform
    success: bool
    attempted: bool = True
    failure: Optional[DeliveryFailure] = None
    error: Optional[str] = None


class FanoutOutcome(BaseModel):
    """
    Summary of one publish invocation.

    `ok` is False only when the fan-out could not run at all (drop, store or
    subscriber list unreadable); individual delivery failures leave it True.
    """
    drop_id: str
    store_id: Optional[str] = None
    ok: bool = True
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    abandoned: int = 0
    pruned: int = 0
    published_at: Optional[datetime] = None
    error: Optional[str] = None
    results: list[RecipientResult] = Field(default_factory=list)


class FanoutDispatcher:
    """
    Sends a drop announcement to all current subscribers of the drop's store.

    Example:
        dispatcher = FanoutDispatcher(
            stores=data_store, ledger=data_store, drops=data_store,
            channels=NotificationChannels(telegram),
        )
        outcome = await dispatcher.publish_drop("drop-001")
    """

    def __init__(
        self,
        stores: StoreDirectory,
        ledger: SubscriptionLedger,
        drops: DropRepository,
        channels: NotificationChannels,
        platforms: Iterable[Platform] = (Platform.TELEGRAM,),
        max_concurrency: int = 10,
        timeout_seconds: Optional[float] = None,
        prune_invalid_recipients: bool = False,
    ):
        """
        Initialize the dispatcher.

        Args:
            stores: Store lookups
            ledger: Subscriber lists (read), pruning (delete)
            drops: Drop lookups and the publication mark
            channels: Channel per platform
            platforms: Platforms whose subscribers are notified
            max_concurrency: Upper bound on sends in flight
            timeout_seconds: Overall bound on the fan-out; None waits for all
            prune_invalid_recipients: Delete subscriptions whose recipient the
                platform reports as invalid or blocked
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        self.stores = stores
        self.ledger = ledger
        self.drops = drops
        self.channels = channels
        self.platforms = tuple(Platform(p) for p in platforms)
        self.max_concurrency = max_concurrency
        self.timeout_seconds = timeout_seconds
        self.prune_invalid_recipients = prune_invalid_recipients

    async def publish_drop(self, drop_id: str) -> FanoutOutcome:
        """
        Fan a drop out to its store's subscribers and mark it published.

        Raises:
            NotFoundError: If the drop or its store does not exist
        """
        try:
            drop = self.drops.get_drop(drop_id)
            store = self.stores.find_store_by_id(drop.store_id) if drop is not None else None
        except PersistenceError as e:
            logger.error(f"Cannot fan out drop {drop_id}: lookup failed: {e}")
            return FanoutOutcome(drop_id=drop_id, ok=False, error=str(e))

        if drop is None:
            raise NotFoundError("drop", drop_id)
        if store is None:
            raise NotFoundError("store", drop.store_id)

        if drop.is_published:
            logger.info(f"Drop {drop_id} was already published at {drop.published_at}; sending again")

        try:
            subscribers = self._load_subscribers(drop.store_id)
        except PersistenceError as e:
            logger.error(f"Cannot fan out drop {drop_id}: subscriber list unavailable: {e}")
            return FanoutOutcome(drop_id=drop_id, store_id=drop.store_id, ok=False, error=str(e))

        logger.info(f"Publishing drop {drop_id} ({drop.title}) to {len(subscribers)} subscriber(s) of {store.slug}")
        results = await self._deliver_all(drop, subscribers)

        outcome = FanoutOutcome(
            drop_id=drop_id,
            store_id=drop.store_id,
            attempted=sum(1 for r in results if r.attempted),
            succeeded=sum(1 for r in results if r.success),
            failed=sum(1 for r in results if r.attempted and not r.success),
            abandoned=sum(1 for r in results if not r.attempted),
            results=results,
        )

        if self.prune_invalid_recipients:
            outcome.pruned = self._prune(drop.store_id, results)

        outcome.published_at = self._mark_published(drop_id)
        if outcome.published_at is None:
            outcome.error = "Drop could not be marked published"

        logger.info(
            f"Drop {drop_id} fan-out done: attempted={outcome.attempted}, "
            f"succeeded={outcome.succeeded}, failed={outcome.failed}, abandoned={outcome.abandoned}"
        )
        return outcome

    # =========================================================================
    # Internals
    # =========================================================================

    def _load_subscribers(self, store_id: str) -> list[Subscription]:
        subscribers = []
        for platform in self.platforms:
            subscribers.extend(self.ledger.list_subscriptions(store_id, platform))
        return subscribers

    async def _deliver_all(self, drop: Drop, subscribers: list[Subscription]) -> list[RecipientResult]:
        """Send to every subscriber concurrently and collect one result each."""
        if not subscribers:
            return []

        caption = render_drop_caption(drop)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        started: set[int] = set()

        async def deliver(index: int, subscription: Subscription) -> RecipientResult:
            async with semaphore:
                started.add(index)
                return await self._deliver_one(drop, caption, subscription)

        tasks = [
            asyncio.create_task(deliver(i, s))
            for i, s in enumerate(subscribers)
        ]
        done, pending = await asyncio.wait(tasks, timeout=self.timeout_seconds)
        if pending:
            logger.warning(
                f"Fan-out of drop {drop.id} timed out after {self.timeout_seconds}s; "
                f"{len(pending)} send(s) unfinished"
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        results = []
        for index, (task, subscription) in enumerate(zip(tasks, subscribers)):
            if task in done:
                results.append(task.result())
            elif index in started:
                results.append(self._failed(subscription, DeliveryFailure.TIMEOUT, "Cancelled by fan-out timeout"))
            else:
                results.append(RecipientResult(
                    recipient=subscription.external_user_id,
                    platform=subscription.platform,
                    success=False,
                    attempted=False,
                    error="Abandoned by fan-out timeout",
                ))
        return results

    async def _deliver_one(self, drop: Drop, caption: str, subscription: Subscription) -> RecipientResult:
        recipient = subscription.external_user_id
        try:
            sent = await self.channels.send_image(subscription.platform, recipient, drop.image_url, caption)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Channels report failures as results; an exception here is a bug
            # in the channel, still confined to this recipient
            logger.exception(f"Channel raised while sending drop {drop.id} to {recipient}")
            return self._failed(subscription, DeliveryFailure.UNEXPECTED, str(e))

        if not sent.success:
            failure = sent.failure_reason
            logger.warning(f"Drop {drop.id} not delivered to {recipient}: {failure.value} ({sent.error})")
            return self._failed(subscription, failure, sent.error)

        return RecipientResult(recipient=recipient, platform=subscription.platform, success=True)

    @staticmethod
    def _failed(subscription: Subscription, failure: DeliveryFailure, error: Optional[str]) -> RecipientResult:
        return RecipientResult(
            recipient=subscription.external_user_id,
            platform=subscription.platform,
            success=False,
            failure=failure,
            error=error,
        )

    def _prune(self, store_id: str, results: list[RecipientResult]) -> int:
        pruned = 0
        for result in results:
            if result.failure != DeliveryFailure.INVALID_RECIPIENT:
                continue
            try:
                pruned += self.ledger.delete_subscriptions(store_id, result.platform, result.recipient)
            except PersistenceError as e:
                logger.error(f"Could not prune subscription of {result.recipient}: {e}")
        if pruned:
            logger.info(f"Pruned {pruned} invalid subscription(s) from store {store_id}")
        return pruned

    def _mark_published(self, drop_id: str) -> Optional[datetime]:
        published_at = datetime.utcnow()
        try:
            updated = self.drops.mark_drop_published(drop_id, published_at)
        except PersistenceError as e:
            logger.error(f"Could not mark drop {drop_id} published: {e}")
            return None
        return updated.published_at if updated else None
