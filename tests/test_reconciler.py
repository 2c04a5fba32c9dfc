"""
test_reconciler.py — Status reconciliation from webhooks and polling.

Covers:
    • Merge table (no regression, failures absorb, Unknown never wins)
    • Idempotent event application
    • Coarse Read on Opened / Clicked / Read events
    • Webhook summaries (applied / duplicate / unmatched)
    • Polling with cost back-fill

Run with:
    pytest tests/test_reconciler.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from backend.app.core.errors import NotFoundError
from backend.app.delivery.models import (
    DeliveryResult,
    DeliveryStatus,
    DeliveryStatusSnapshot,
    NotificationChannel,
    NotificationStatus,
)
from backend.app.delivery.reconciler import merge_status
from tests.helpers import FakeProvider, make_engine, make_notification

S = DeliveryStatus
# Later than any send event recorded during a test
T0 = datetime.now(timezone.utc) + timedelta(hours=1)


class TestMergeStatus:

    @pytest.mark.parametrize("current, incoming, expected", [
        (S.PENDING,   S.SENT,         S.SENT),
        (S.SENT,      S.DELIVERED,    S.DELIVERED),
        (S.DELIVERED, S.SENT,         S.DELIVERED),
        (S.DELIVERED, S.OPENED,       S.OPENED),
        (S.OPENED,    S.READ,         S.OPENED),
        (S.OPENED,    S.CLICKED,      S.CLICKED),
        (S.CLICKED,   S.OPENED,       S.CLICKED),
        (S.SENT,      S.BOUNCED,      S.BOUNCED),
        (S.PENDING,   S.FAILED,       S.FAILED),
        (S.DELIVERED, S.SPAM,         S.DELIVERED),
        (S.BOUNCED,   S.DELIVERED,    S.BOUNCED),
        (S.FAILED,    S.UNSUBSCRIBED, S.FAILED),
        (S.DELIVERED, S.UNKNOWN,      S.DELIVERED),
        (S.UNKNOWN,   S.SENT,         S.SENT),
        (S.UNKNOWN,   S.BOUNCED,      S.BOUNCED),
    ])
    def test_merge(self, current, incoming, expected):
        assert merge_status(current, incoming) == expected


async def _sent_attempt(engine, notification=None):
    notification = notification or make_notification()
    outcome = await engine.orchestrator.deliver_one(notification, NotificationChannel.SMS)
    assert outcome.success
    return notification, outcome.attempt


class TestApplyEvent:

    @pytest.mark.asyncio
    async def test_replay_is_ignored(self, engine):
        _, attempt = await _sent_attempt(engine)

        assert await engine.reconciler.apply_event(attempt.attempt_id, "delivered", T0) is True
        events_after_first = len(attempt.events)
        assert await engine.reconciler.apply_event(attempt.attempt_id, "delivered", T0) is False

        assert len(attempt.events) == events_after_first
        assert attempt.delivery_status == S.DELIVERED

    @pytest.mark.asyncio
    async def test_late_sent_does_not_regress(self, engine):
        _, attempt = await _sent_attempt(engine)
        await engine.reconciler.apply_event(attempt.attempt_id, "delivered", T0)

        recorded = await engine.reconciler.apply_event(
            attempt.attempt_id, "sent", T0 + timedelta(seconds=5),
        )

        assert recorded is True
        assert attempt.delivery_status == S.DELIVERED
        assert [e.raw_status for e in attempt.events][-2:] == ["delivered", "sent"]

    @pytest.mark.asyncio
    async def test_unmapped_status_keeps_current(self, engine):
        _, attempt = await _sent_attempt(engine)
        await engine.reconciler.apply_event(attempt.attempt_id, "carrier_magic", T0)
        assert attempt.delivery_status == S.SENT
        assert attempt.events[-1].status == S.UNKNOWN

    @pytest.mark.asyncio
    async def test_failure_after_delivery_recorded_only(self, engine):
        _, attempt = await _sent_attempt(engine)
        await engine.reconciler.apply_event(attempt.attempt_id, "delivered", T0)
        await engine.reconciler.apply_event(attempt.attempt_id, "bounced", T0 + timedelta(minutes=1))
        assert attempt.delivery_status == S.DELIVERED
        assert attempt.events[-1].status == S.BOUNCED

    @pytest.mark.asyncio
    async def test_opened_marks_notification_read(self, engine):
        notification, attempt = await _sent_attempt(engine)
        assert notification.status == NotificationStatus.SENT

        await engine.reconciler.apply_event(attempt.attempt_id, "opened", T0)

        stored = await engine.store.load_notification(notification.id)
        assert stored.status == NotificationStatus.READ

    @pytest.mark.asyncio
    async def test_open_after_bounce_does_not_mark_read(self, engine):
        notification, attempt = await _sent_attempt(engine)
        await engine.reconciler.apply_event(attempt.attempt_id, "bounced", T0)

        recorded = await engine.reconciler.apply_event(
            attempt.attempt_id, "opened", T0 + timedelta(minutes=5),
        )

        assert recorded is True
        assert attempt.delivery_status == S.BOUNCED
        assert notification.status == NotificationStatus.SENT

    @pytest.mark.asyncio
    async def test_delivered_does_not_mark_read(self, engine):
        notification, attempt = await _sent_attempt(engine)
        await engine.reconciler.apply_event(attempt.attempt_id, "delivered", T0)
        assert notification.status == NotificationStatus.SENT

    @pytest.mark.asyncio
    async def test_unknown_attempt(self, engine):
        assert await engine.reconciler.apply_event("ATT-missing", "delivered", T0) is False


class TestWebhook:

    @pytest.mark.asyncio
    async def test_summary_counts(self, engine, sms_provider):
        _, attempt = await _sent_attempt(engine)
        payload = {
            "provider_message_id": attempt.provider_message_id,
            "status": "delivered",
            "timestamp": T0.isoformat(),
        }

        first = await engine.handle_webhook(sms_provider.name, payload)
        replay = await engine.handle_webhook(sms_provider.name, payload)
        stray = await engine.handle_webhook(
            sms_provider.name, {"provider_message_id": "MSG-nope", "status": "delivered"},
        )

        assert (first.received, first.applied) == (1, 1)
        assert replay.duplicates == 1
        assert stray.unmatched == 1
        assert attempt.delivery_status == S.DELIVERED

    @pytest.mark.asyncio
    async def test_unknown_provider(self, engine):
        with pytest.raises(NotFoundError):
            await engine.handle_webhook("carrier-pigeon", {"status": "sent"})

    @pytest.mark.asyncio
    async def test_unparseable_payload_is_empty(self, engine, sms_provider):
        summary = await engine.handle_webhook(sms_provider.name, {"hello": "world"})
        assert summary.received == 0


class _PollingProvider(FakeProvider):

    def __init__(self, snapshot: DeliveryStatusSnapshot, **kwargs) -> None:
        super().__init__(NotificationChannel.SMS, **kwargs)
        self.snapshot = snapshot

    async def get_delivery_status(self, provider_message_id):
        return self.snapshot


class TestPolling:

    @pytest.mark.asyncio
    async def test_poll_applies_and_backfills_cost(self):
        queued = DeliveryResult(
            success=True, provider_message_id="SM-1", status=S.PENDING, raw_status="queued",
        )
        provider = _PollingProvider(
            DeliveryStatusSnapshot(
                status=S.DELIVERED, raw_status="delivered", last_updated=T0,
                final_cost=Decimal("0.0079"), currency="USD",
            ),
            results=[queued],
        )
        engine = make_engine(provider)
        _, attempt = await _sent_attempt(engine)
        assert attempt.cost is None

        updated = await engine.reconciler.poll_pending()

        assert updated == 1
        assert attempt.delivery_status == S.DELIVERED
        assert attempt.cost == Decimal("0.0079")
        assert await engine.reconciler.poll_pending() == 0

    @pytest.mark.asyncio
    async def test_unsupported_status_lookup_is_skipped(self, engine):
        _, attempt = await _sent_attempt(engine)
        assert await engine.reconciler.poll(attempt) is False
        assert attempt.delivery_status == S.SENT
