"""
in_app.py — In-app inbox sink.

Messages land in a per-user inbox held in memory; the real-time push to
connected clients is owned by the UI layer, which reads from the inbox.
Sending is delivery, so results are Delivered immediately.  ``mark_read``
is how the UI reports that the user saw a message; it emits a callback
the reconciler folds into the attempt history.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from backend.app.core.config import ProviderConfig
from backend.app.delivery.models import (
    DeliveryEvent,
    DeliveryResult,
    DeliveryStatus,
    DeliveryStatusSnapshot,
    NotificationChannel,
    ProviderCallback,
    SendRequest,
    _generate_id,
    utcnow,
)
from backend.app.delivery.providers.base import HttpProvider, parse_timestamp

logger = logging.getLogger(__name__)


@dataclass
class InboxMessage:
    message_id: str
    user_id: str
    subject: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)
    reference: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    read_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "user_id": self.user_id,
            "subject": self.subject,
            "body": self.body,
            "data": self.data,
            "notification_id": self.reference,
            "created_at": self.created_at.isoformat(),
            "read_at": self.read_at.isoformat() if self.read_at else None,
        }


class InAppProvider(HttpProvider):
    """In-memory inbox; available whenever the channel is enabled."""

    channel = NotificationChannel.IN_APP
    REQUIRED_CREDENTIALS = ("enabled",)
    STATUS_MAP = {
        "delivered": DeliveryStatus.DELIVERED,
        "read":      DeliveryStatus.READ,
    }

    def __init__(self, config: ProviderConfig, **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        self._messages: Dict[str, InboxMessage] = {}
        self._inboxes: Dict[str, List[str]] = {}

    async def _send(self, request: SendRequest) -> DeliveryResult:
        message = InboxMessage(
            message_id=_generate_id("INAPP"),
            user_id=request.recipient,
            subject=request.subject,
            body=request.body,
            data=dict(request.data),
            reference=request.reference,
        )
        self._messages[message.message_id] = message
        self._inboxes.setdefault(message.user_id, []).append(message.message_id)
        return DeliveryResult(
            success=True,
            provider_message_id=message.message_id,
            status=DeliveryStatus.DELIVERED,
            raw_status="delivered",
        )

    def inbox(self, user_id: str, unread_only: bool = False) -> List[InboxMessage]:
        messages = [self._messages[m] for m in self._inboxes.get(user_id, [])]
        if unread_only:
            messages = [m for m in messages if m.read_at is None]
        return messages

    def mark_read(self, message_id: str) -> Optional[ProviderCallback]:
        """Flag a message read; returns the callback to reconcile (None if unknown)."""
        message = self._messages.get(message_id)
        if message is None:
            return None
        if message.read_at is None:
            message.read_at = utcnow()
        return ProviderCallback(
            provider_message_id=message_id,
            raw_status="read",
            occurred_at=message.read_at,
            payload={"user_id": message.user_id},
        )

    async def get_delivery_status(self, provider_message_id: str) -> DeliveryStatusSnapshot:
        message = self._messages.get(provider_message_id)
        if message is None:
            return DeliveryStatusSnapshot(
                status=DeliveryStatus.UNKNOWN,
                raw_status="unknown",
                error_details="Message not found",
            )
        raw = "read" if message.read_at else "delivered"
        status = self.map_status(raw)
        occurred = message.read_at or message.created_at
        return DeliveryStatusSnapshot(
            status=status,
            raw_status=raw,
            last_updated=occurred,
            events=[DeliveryEvent(raw_status=raw, status=status, occurred_at=occurred)],
        )

    def parse_callback(self, payload: Any) -> List[ProviderCallback]:
        if not isinstance(payload, Mapping):
            return []
        message_id = payload.get("message_id")
        if not isinstance(message_id, str) or message_id not in self._messages:
            return []
        raw = payload.get("status") or "read"
        if self.map_status(raw) == DeliveryStatus.READ:
            callback = self.mark_read(message_id)
            return [callback] if callback else []
        return [
            ProviderCallback(
                provider_message_id=message_id,
                raw_status=raw,
                occurred_at=parse_timestamp(payload.get("timestamp")),
                payload=dict(payload),
            )
        ]

    def clear(self) -> None:
        self._messages.clear()
        self._inboxes.clear()
