"""
store.py — Persistence port for notifications and delivery attempts.

The engine only needs simple load/save operations; the durable database
lives outside this package and plugs in by implementing ``DeliveryStore``.
``InMemoryDeliveryStore`` is the bundled adapter (development + tests).

Attempts are append-only history: retries are new records, and the only
mutation after creation is ``append_delivery_event`` / status updates
made by the Status Reconciler.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Protocol, Tuple

from backend.app.delivery.models import (
    DeliveryAttempt,
    DeliveryEvent,
    DeliveryStatus,
    Notification,
    NotificationChannel,
)

# Attempts in these states still expect provider signals
UNSETTLED_STATUSES = frozenset({
    DeliveryStatus.PENDING,
    DeliveryStatus.SENT,
    DeliveryStatus.UNKNOWN,
})


def _same_event(a: DeliveryEvent, b: DeliveryEvent) -> bool:
    if a.key() == b.key():
        return True
    return bool(a.payload) and a.raw_status == b.raw_status and a.payload == b.payload


class DeliveryStore(Protocol):
    """Persistence port consumed by the engine."""

    async def load_notification(self, notification_id: str) -> Optional[Notification]:
        ...

    async def save_notification(self, notification: Notification) -> None:
        ...

    async def next_attempt_number(
        self, notification_id: str, channel: NotificationChannel,
    ) -> int:
        ...

    async def save_delivery_attempt(self, attempt: DeliveryAttempt) -> None:
        ...

    async def load_delivery_attempt(self, attempt_id: str) -> Optional[DeliveryAttempt]:
        ...

    async def find_attempt_by_provider_message_id(
        self, provider_name: str, provider_message_id: str,
    ) -> Optional[DeliveryAttempt]:
        ...

    async def list_attempts(
        self,
        notification_id: str,
        channel: Optional[NotificationChannel] = None,
    ) -> List[DeliveryAttempt]:
        ...

    async def append_delivery_event(self, attempt_id: str, event: DeliveryEvent) -> bool:
        ...

    async def list_unsettled_attempts(self, limit: int = 500) -> List[DeliveryAttempt]:
        ...


class InMemoryDeliveryStore:
    """Dict-backed store (production: database)."""

    def __init__(self) -> None:
        self._notifications: Dict[str, Notification] = {}
        self._attempts: Dict[str, DeliveryAttempt] = {}
        self._by_notification: Dict[str, List[str]] = {}
        self._by_provider_id: Dict[Tuple[str, str], str] = {}

    async def load_notification(self, notification_id: str) -> Optional[Notification]:
        return self._notifications.get(notification_id)

    async def save_notification(self, notification: Notification) -> None:
        self._notifications[notification.id] = notification

    async def next_attempt_number(
        self, notification_id: str, channel: NotificationChannel,
    ) -> int:
        attempts = await self.list_attempts(notification_id, channel)
        return max((a.attempt_number for a in attempts), default=0) + 1

    async def save_delivery_attempt(self, attempt: DeliveryAttempt) -> None:
        if attempt.attempt_id not in self._attempts:
            self._by_notification.setdefault(attempt.notification_id, []).append(
                attempt.attempt_id
            )
        self._attempts[attempt.attempt_id] = attempt
        if attempt.provider_message_id:
            key = (attempt.provider_name, attempt.provider_message_id)
            self._by_provider_id[key] = attempt.attempt_id

    async def load_delivery_attempt(self, attempt_id: str) -> Optional[DeliveryAttempt]:
        return self._attempts.get(attempt_id)

    async def find_attempt_by_provider_message_id(
        self, provider_name: str, provider_message_id: str,
    ) -> Optional[DeliveryAttempt]:
        attempt_id = self._by_provider_id.get((provider_name, provider_message_id))
        return self._attempts.get(attempt_id) if attempt_id else None

    async def list_attempts(
        self,
        notification_id: str,
        channel: Optional[NotificationChannel] = None,
    ) -> List[DeliveryAttempt]:
        attempts = [
            self._attempts[a] for a in self._by_notification.get(notification_id, [])
        ]
        if channel is not None:
            attempts = [a for a in attempts if a.channel == channel]
        return sorted(attempts, key=lambda a: (a.channel.value, a.attempt_number))

    async def append_delivery_event(self, attempt_id: str, event: DeliveryEvent) -> bool:
        """
        Append unless the event was already recorded: same timestamp + raw
        status, or a redelivered webhook with an identical payload.
        """
        attempt = self._attempts.get(attempt_id)
        if attempt is None:
            return False
        if any(_same_event(e, event) for e in attempt.events):
            return False
        attempt.events.append(event)
        attempt.events.sort(key=lambda e: e.occurred_at)
        attempt.last_updated_at = event.recorded_at
        return True

    async def list_unsettled_attempts(self, limit: int = 500) -> List[DeliveryAttempt]:
        unsettled = [
            a for a in self._attempts.values()
            if a.provider_message_id
            and a.delivery_status in UNSETTLED_STATUSES
        ]
        unsettled.sort(key=lambda a: a.last_updated_at)
        return unsettled[:limit]

    def clear(self) -> None:
        self._notifications.clear()
        self._attempts.clear()
        self._by_notification.clear()
        self._by_provider_id.clear()
