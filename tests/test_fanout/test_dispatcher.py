"""
Tests for the fan-out dispatcher.

Publishing a drop should reach every current subscriber of its store, keep
one subscriber's failure away from the others, and stamp the drop as
published once all sends have settled.
"""

import asyncio

import pytest

from fanout.dispatcher import FanoutDispatcher
from shared.channels import MessageKind, NotificationChannels, RecordingChannel, SendResult
from shared.errors import DeliveryFailure, NotFoundError, PersistenceError
from shared.models import Platform


class SlowChannel(RecordingChannel):
    """Recording channel whose sends take a while and report peak concurrency."""

    def __init__(self, delay: float, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay
        self.in_flight = 0
        self.peak = 0

    async def send_image(self, recipient_id, image_ref, caption):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            return await super().send_image(recipient_id, image_ref, caption)
        finally:
            self.in_flight -= 1


class ExplodingChannel(RecordingChannel):
    """Recording channel that raises for selected recipients."""

    def __init__(self, explode_for, **kwargs):
        super().__init__(**kwargs)
        self.explode_for = set(explode_for)

    async def send_image(self, recipient_id, image_ref, caption):
        if recipient_id in self.explode_for:
            raise RuntimeError("channel bug")
        return await super().send_image(recipient_id, image_ref, caption)


class ReasonlessFailureChannel(RecordingChannel):
    """Recording channel that reports failures for selected recipients without a reason."""

    def __init__(self, fail_silently_for, **kwargs):
        super().__init__(**kwargs)
        self.fail_silently_for = set(fail_silently_for)

    async def send_image(self, recipient_id, image_ref, caption):
        if recipient_id in self.fail_silently_for:
            return SendResult(
                success=False,
                platform=self.platform,
                recipient=recipient_id,
                kind=MessageKind.IMAGE,
                body=caption,
                image_ref=image_ref,
            )
        return await super().send_image(recipient_id, image_ref, caption)


def make_dispatcher(data_store, channel, **kwargs) -> FanoutDispatcher:
    return FanoutDispatcher(
        stores=data_store,
        ledger=data_store,
        drops=data_store,
        channels=NotificationChannels(channel),
        **kwargs,
    )


class TestPublishDrop:

    def test_sends_image_to_every_subscriber(self, dispatcher, telegram, data_store, jacket_drop_id):
        outcome = asyncio.run(dispatcher.publish_drop(jacket_drop_id))

        assert outcome.ok is True
        assert outcome.attempted == 2
        assert outcome.succeeded == 2
        assert outcome.failed == 0
        assert telegram.get_sent_count() == 2
        assert sorted(m.recipient for m in telegram.sent_messages) == ["111", "222"]

        drop = data_store.get_drop(jacket_drop_id)
        for message in telegram.sent_messages:
            assert message.kind == MessageKind.IMAGE
            assert message.image_ref == drop.image_url
            assert "Moonwalker Jacket" in message.body
            assert "$129.00" in message.body
            assert drop.product_url in message.body

    def test_marks_drop_published(self, dispatcher, data_store, jacket_drop_id):
        outcome = asyncio.run(dispatcher.publish_drop(jacket_drop_id))

        drop = data_store.get_drop(jacket_drop_id)
        assert drop.is_published
        assert outcome.published_at == drop.published_at

    def test_only_the_drops_store_is_reached(self, dispatcher, telegram, glaze_drop_id):
        asyncio.run(dispatcher.publish_drop(glaze_drop_id))

        assert sorted(m.recipient for m in telegram.sent_messages) == ["111", "333", "444"]

    def test_store_without_subscribers(self, dispatcher, telegram, data_store, zine_drop_id):
        outcome = asyncio.run(dispatcher.publish_drop(zine_drop_id))

        assert outcome.ok is True
        assert (outcome.attempted, outcome.succeeded, outcome.failed) == (0, 0, 0)
        assert telegram.get_sent_count() == 0
        assert data_store.get_drop(zine_drop_id).is_published

    def test_subscribers_added_after_publish_are_not_notified(
        self, dispatcher, telegram, data_store, jacket_drop_id, lunargear_store_id,
    ):
        asyncio.run(dispatcher.publish_drop(jacket_drop_id))
        data_store.upsert_subscription(lunargear_store_id, Platform.TELEGRAM, "999", "late")

        assert telegram.find_message_to("999") is None

    def test_republishing_sends_again(self, dispatcher, telegram, data_store, published_drop_id):
        first_published = data_store.get_drop(published_drop_id).published_at

        outcome = asyncio.run(dispatcher.publish_drop(published_drop_id))

        assert outcome.attempted == 2
        assert telegram.get_sent_count() == 2
        assert data_store.get_drop(published_drop_id).published_at > first_published

    def test_unknown_drop(self, dispatcher, telegram):
        with pytest.raises(NotFoundError, match="Drop not found"):
            asyncio.run(dispatcher.publish_drop("drop-999"))

        assert telegram.get_sent_count() == 0

    def test_unknown_store(self, dispatcher, data_store, jacket_drop_id):
        orphan = data_store.get_drop(jacket_drop_id).model_copy(update={"id": "drop-orphan", "store_id": "store-999"})
        data_store.add_drop(orphan)

        with pytest.raises(NotFoundError):
            asyncio.run(dispatcher.publish_drop("drop-orphan"))

    def test_invalid_concurrency_rejected(self, data_store, telegram):
        with pytest.raises(ValueError):
            make_dispatcher(data_store, telegram, max_concurrency=0)


class TestFailureIsolation:

    def test_one_failure_does_not_affect_siblings(self, data_store, glaze_drop_id):
        telegram = RecordingChannel(fail_for={"333": DeliveryFailure.NETWORK})
        dispatcher = make_dispatcher(data_store, telegram)

        outcome = asyncio.run(dispatcher.publish_drop(glaze_drop_id))

        assert outcome.ok is True
        assert outcome.attempted == 3
        assert outcome.succeeded == 2
        assert outcome.failed == 1
        failed = [r for r in outcome.results if not r.success]
        assert failed[0].recipient == "333"
        assert failed[0].failure == DeliveryFailure.NETWORK
        assert data_store.get_drop(glaze_drop_id).is_published

    def test_all_failures_still_mark_published(self, data_store, jacket_drop_id):
        telegram = RecordingChannel(fail_for={
            "111": DeliveryFailure.SERVER_ERROR,
            "222": DeliveryFailure.RATE_LIMITED,
        })
        dispatcher = make_dispatcher(data_store, telegram)

        outcome = asyncio.run(dispatcher.publish_drop(jacket_drop_id))

        assert outcome.succeeded == 0
        assert outcome.failed == 2
        assert outcome.published_at is not None

    def test_channel_exception_confined_to_recipient(self, data_store, glaze_drop_id):
        telegram = ExplodingChannel(explode_for={"444"})
        dispatcher = make_dispatcher(data_store, telegram)

        outcome = asyncio.run(dispatcher.publish_drop(glaze_drop_id))

        assert outcome.succeeded == 2
        broken = next(r for r in outcome.results if r.recipient == "444")
        assert broken.failure == DeliveryFailure.UNEXPECTED
        assert "channel bug" in broken.error

    def test_failure_reported_without_reason_stays_isolated(self, data_store, glaze_drop_id):
        telegram = ReasonlessFailureChannel(fail_silently_for={"333"})
        dispatcher = make_dispatcher(data_store, telegram)

        outcome = asyncio.run(dispatcher.publish_drop(glaze_drop_id))

        assert outcome.ok is True
        assert outcome.succeeded == 2
        assert outcome.failed == 1
        silent = next(r for r in outcome.results if r.recipient == "333")
        assert silent.failure == DeliveryFailure.UNEXPECTED
        assert data_store.get_drop(glaze_drop_id).is_published

    def test_unreadable_drop_repository(self, data_store, telegram, jacket_drop_id, monkeypatch):
        def broken(*args, **kwargs):
            raise PersistenceError("drops unavailable")

        monkeypatch.setattr(data_store, "get_drop", broken)
        dispatcher = make_dispatcher(data_store, telegram)

        outcome = asyncio.run(dispatcher.publish_drop(jacket_drop_id))

        assert outcome.ok is False
        assert outcome.attempted == 0
        assert "drops unavailable" in outcome.error
        assert telegram.get_sent_count() == 0

    def test_unreadable_store_directory(self, data_store, telegram, jacket_drop_id, monkeypatch):
        def broken(*args, **kwargs):
            raise PersistenceError("stores unavailable")

        monkeypatch.setattr(data_store, "find_store_by_id", broken)
        dispatcher = make_dispatcher(data_store, telegram)

        outcome = asyncio.run(dispatcher.publish_drop(jacket_drop_id))

        assert outcome.ok is False
        assert "stores unavailable" in outcome.error
        assert telegram.get_sent_count() == 0
        assert not data_store.get_drop(jacket_drop_id).is_published

    def test_unreadable_subscriber_list(self, data_store, telegram, jacket_drop_id):
        class BrokenLedger:
            def list_subscriptions(self, store_id, platform):
                raise PersistenceError("database unavailable")

            def delete_subscriptions(self, *args):
                raise PersistenceError("database unavailable")

        dispatcher = FanoutDispatcher(
            stores=data_store,
            ledger=BrokenLedger(),
            drops=data_store,
            channels=NotificationChannels(telegram),
        )

        outcome = asyncio.run(dispatcher.publish_drop(jacket_drop_id))

        assert outcome.ok is False
        assert outcome.attempted == 0
        assert "database unavailable" in outcome.error
        assert telegram.get_sent_count() == 0
        assert not data_store.get_drop(jacket_drop_id).is_published


class TestPruning:

    def test_invalid_recipients_pruned_when_enabled(self, data_store, glaze_drop_id, nightmarket_store_id):
        telegram = RecordingChannel(fail_for={
            "333": DeliveryFailure.INVALID_RECIPIENT,
            "444": DeliveryFailure.NETWORK,
        })
        dispatcher = make_dispatcher(data_store, telegram, prune_invalid_recipients=True)

        outcome = asyncio.run(dispatcher.publish_drop(glaze_drop_id))

        assert outcome.pruned == 1
        assert data_store.get_subscription(nightmarket_store_id, Platform.TELEGRAM, "333") is None
        assert data_store.get_subscription(nightmarket_store_id, Platform.TELEGRAM, "444") is not None

    def test_no_pruning_by_default(self, data_store, glaze_drop_id, nightmarket_store_id):
        telegram = RecordingChannel(fail_for={"333": DeliveryFailure.INVALID_RECIPIENT})
        dispatcher = make_dispatcher(data_store, telegram)

        outcome = asyncio.run(dispatcher.publish_drop(glaze_drop_id))

        assert outcome.pruned == 0
        assert data_store.get_subscription(nightmarket_store_id, Platform.TELEGRAM, "333") is not None


class TestConcurrency:

    def test_sends_bounded_by_max_concurrency(self, data_store, glaze_drop_id):
        telegram = SlowChannel(delay=0.01)
        dispatcher = make_dispatcher(data_store, telegram, max_concurrency=2)

        outcome = asyncio.run(dispatcher.publish_drop(glaze_drop_id))

        assert outcome.succeeded == 3
        assert telegram.peak == 2

    def test_sends_overlap(self, data_store, glaze_drop_id):
        telegram = SlowChannel(delay=0.01)
        dispatcher = make_dispatcher(data_store, telegram, max_concurrency=10)

        asyncio.run(dispatcher.publish_drop(glaze_drop_id))

        assert telegram.peak == 3

    def test_timeout_cancels_and_abandons(self, data_store, glaze_drop_id):
        telegram = SlowChannel(delay=5)
        dispatcher = make_dispatcher(data_store, telegram, max_concurrency=1, timeout_seconds=0.05)

        outcome = asyncio.run(dispatcher.publish_drop(glaze_drop_id))

        assert outcome.ok is True
        assert outcome.attempted == 1
        assert outcome.failed == 1
        assert outcome.abandoned == 2
        assert outcome.succeeded == 0
        assert outcome.results[0].failure == DeliveryFailure.TIMEOUT
        assert all(not r.attempted for r in outcome.results[1:])
        assert outcome.published_at is not None
        assert telegram.in_flight == 0
