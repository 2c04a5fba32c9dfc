"""
reconciler.py — Fold asynchronous provider status signals into attempts.

Signals arrive two ways: pushed (webhook callbacks keyed by provider
message id) and pulled (``get_delivery_status`` polling for attempts that
are still unsettled).  Both end in ``apply_event``.

═══════════════════════════════════════════════════════════════════════════
MERGE RULES
═══════════════════════════════════════════════════════════════════════════

    Rank:  Pending 0 < Sent 1 < Delivered 2 < Opened 3 = Read 3 < Clicked 4

    current            incoming            result
    ───────────────    ────────────────    ─────────────────────────────
    any                Unknown             current (Unknown never wins)
    failure            any                 current (failures absorb)
    Unknown            anything known      incoming
    Pending / Sent     failure             incoming
    Delivered+         failure             current
    ranked             ranked              higher rank wins

Events are recorded even when they do not move the status, so the attempt
keeps a full history.  Replaying an event (same attempt, timestamp and raw
status) records nothing and changes nothing.

The coarse notification status moves Sent → Read only on Read, Opened or
Clicked events.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from backend.app.core.errors import NotFoundError
from backend.app.delivery.dispatcher import run_bounded
from backend.app.delivery.models import (
    LIFECYCLE_RANK,
    READ_QUALIFYING_STATUSES,
    DeliveryAttempt,
    DeliveryEvent,
    DeliveryStatus,
    NotificationStatus,
)
from backend.app.delivery.providers.registry import ProviderRegistry
from backend.app.delivery.store import DeliveryStore

logger = logging.getLogger(__name__)

_ADVANCEABLE_TO_FAILURE = frozenset({
    DeliveryStatus.PENDING,
    DeliveryStatus.SENT,
    DeliveryStatus.UNKNOWN,
})


def merge_status(current: DeliveryStatus, incoming: DeliveryStatus) -> DeliveryStatus:
    """Apply the merge table above; never moves backwards."""
    if incoming == DeliveryStatus.UNKNOWN or current.is_failure:
        return current
    if current == DeliveryStatus.UNKNOWN:
        return incoming
    if incoming.is_failure:
        return incoming if current in _ADVANCEABLE_TO_FAILURE else current
    if LIFECYCLE_RANK[incoming] > LIFECYCLE_RANK[current]:
        return incoming
    return current


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class WebhookSummary:
    provider: str
    received: int = 0
    applied: int = 0
    duplicates: int = 0
    unmatched: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "received": self.received,
            "applied": self.applied,
            "duplicates": self.duplicates,
            "unmatched": self.unmatched,
        }


class StatusReconciler:
    """Applies provider status signals to stored attempts and notifications."""

    def __init__(self, registry: ProviderRegistry, store: DeliveryStore) -> None:
        self.registry = registry
        self.store = store

    async def apply_event(
        self,
        attempt_id: str,
        raw_status: str,
        event_timestamp: Optional[datetime] = None,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Record one status signal against an attempt.

        Returns
        -------
        bool
            True if a new event was recorded, False for a replay or an
            unknown attempt.
        """
        attempt = await self.store.load_delivery_attempt(attempt_id)
        if attempt is None:
            logger.warning("Status event for unknown attempt %s ignored", attempt_id)
            return False

        provider = self.registry.get(attempt.provider_name)
        status = provider.map_status(raw_status) if provider else DeliveryStatus.UNKNOWN
        event = DeliveryEvent(
            raw_status=raw_status,
            status=status,
            occurred_at=_as_utc(event_timestamp),
            payload=dict(payload or {}),
        )
        if not await self.store.append_delivery_event(attempt.attempt_id, event):
            logger.debug(
                "Duplicate %s event for attempt %s ignored", raw_status, attempt.attempt_id,
            )
            return False

        previous = attempt.delivery_status
        attempt.delivery_status = merge_status(previous, status)
        await self.store.save_delivery_attempt(attempt)
        if attempt.delivery_status != previous:
            logger.info(
                "Attempt %s: %s → %s (%s)",
                attempt.attempt_id, previous.value, attempt.delivery_status.value, raw_status,
                extra={
                    "attempt_id": attempt.attempt_id,
                    "notification_id": attempt.notification_id,
                    "provider": attempt.provider_name,
                    "delivery_status": attempt.delivery_status.value,
                },
            )

        if (
            status in READ_QUALIFYING_STATUSES
            and attempt.delivery_status in READ_QUALIFYING_STATUSES
        ):
            await self._mark_read(attempt)
        return True

    async def _mark_read(self, attempt: DeliveryAttempt) -> None:
        notification = await self.store.load_notification(attempt.notification_id)
        if notification is None:
            return
        if notification.transition_to(NotificationStatus.READ):
            await self.store.save_notification(notification)
            logger.info(
                "Notification %s read via %s", notification.id, attempt.channel.value,
                extra={"notification_id": notification.id},
            )

    async def apply_callback(
        self,
        provider_name: str,
        provider_message_id: str,
        raw_status: str,
        event_timestamp: Optional[datetime] = None,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> Optional[bool]:
        """Webhook path: locate the attempt by provider message id.

        Returns None when no attempt matches, else what ``apply_event`` returned.
        """
        attempt = await self.store.find_attempt_by_provider_message_id(
            provider_name, provider_message_id,
        )
        if attempt is None:
            logger.warning(
                "[%s] Callback for unknown message %s (%s)",
                provider_name, provider_message_id, raw_status,
            )
            return None
        return await self.apply_event(attempt.attempt_id, raw_status, event_timestamp, payload)

    async def handle_webhook(self, provider_name: str, payload: Any) -> WebhookSummary:
        provider = self.registry.get(provider_name)
        if provider is None:
            raise NotFoundError("provider", name=provider_name)

        callbacks = provider.parse_callback(payload)
        summary = WebhookSummary(provider=provider_name, received=len(callbacks))
        for callback in callbacks:
            applied = await self.apply_callback(
                provider_name,
                callback.provider_message_id,
                callback.raw_status,
                callback.occurred_at,
                callback.payload,
            )
            if applied is None:
                summary.unmatched += 1
            elif applied:
                summary.applied += 1
            else:
                summary.duplicates += 1
        logger.info(
            "[%s] Webhook: %d received, %d applied, %d duplicate, %d unmatched",
            provider_name, summary.received, summary.applied,
            summary.duplicates, summary.unmatched,
        )
        return summary

    # ── Polling ──

    async def poll(self, attempt: DeliveryAttempt) -> bool:
        """Pull the provider's view of one attempt; True if it recorded something new."""
        provider = self.registry.get(attempt.provider_name)
        if provider is None or not attempt.provider_message_id:
            return False
        snapshot = await provider.get_delivery_status(attempt.provider_message_id)
        if snapshot.status == DeliveryStatus.UNKNOWN and snapshot.error_details:
            return False

        if snapshot.final_cost is not None and attempt.cost is None:
            attempt.cost = snapshot.final_cost
            attempt.currency = snapshot.currency or attempt.currency
            await self.store.save_delivery_attempt(attempt)

        return await self.apply_event(
            attempt.attempt_id,
            snapshot.raw_status,
            snapshot.last_updated,
            {"source": "poll"},
        )

    async def poll_pending(self, max_concurrent: int = 10, limit: int = 500) -> int:
        """Poll every unsettled attempt; returns how many recorded new events."""
        attempts: List[DeliveryAttempt] = await self.store.list_unsettled_attempts(limit)
        if not attempts:
            return 0
        slots = await run_bounded(attempts, self.poll, max_concurrent=max_concurrent)
        updated = sum(1 for slot in slots if slot.result)
        logger.info("Status poll: %d/%d attempts updated", updated, len(attempts))
        return updated
