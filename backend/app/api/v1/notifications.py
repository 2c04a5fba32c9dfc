"""
FastAPI route: notification submission and inspection.

Provides endpoints to:
    POST /api/v1/notifications                 — accept for async delivery (202)
    POST /api/v1/notifications/bulk            — bounded bulk send now
    POST /api/v1/notifications/{id}/send       — synchronous send over one channel
    POST /api/v1/notifications/{id}/cancel     — cancel (drops waiting retries)
    GET  /api/v1/notifications/{id}            — coarse status + attempt history
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator

from backend.app.api.dependencies import get_engine
from backend.app.delivery.engine import NotificationEngine
from backend.app.delivery.models import (
    Notification,
    NotificationChannel,
    NotificationContent,
    NotificationPriority,
    NotificationType,
)

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------

class NotificationRequest(BaseModel):
    """One notification for one recipient across one or more channels."""
    id: Optional[str] = Field(None, description="Caller-supplied id; generated if omitted")
    type: NotificationType = Field(NotificationType.SYSTEM_ALERT, examples=["ExamReminder"])
    priority: str = Field("NORMAL", examples=["HIGH"], description="LOW / NORMAL / HIGH / URGENT / CRITICAL")
    recipients: Dict[str, str] = Field(
        ..., min_length=1,
        description="Channel → recipient identity",
        examples=[{"sms": "+15551234567", "email": "student@example.com"}],
    )
    subject: str = Field("", examples=["Exam starts in 1 hour"])
    body: str = Field(..., examples=["Your Physics exam starts at 10:00 in Hall B."])
    data: Dict[str, Any] = Field(default_factory=dict)
    scheduled_at: Optional[datetime] = Field(None, description="Hold delivery until this time")

    @field_validator("priority")
    @classmethod
    def _check_priority(cls, value: str) -> str:
        key = value.strip().upper()
        if key not in NotificationPriority.__members__:
            raise ValueError(f"Unknown priority: {value}")
        return key

    @field_validator("recipients")
    @classmethod
    def _check_channels(cls, value: Dict[str, str]) -> Dict[str, str]:
        parsed: Dict[str, str] = {}
        for channel, identity in value.items():
            try:
                parsed[NotificationChannel.parse(channel).value] = identity
            except ValueError:
                raise ValueError(f"Unknown channel: {channel}") from None
        return parsed

    def to_notification(self) -> Notification:
        notification = Notification(
            recipients={NotificationChannel(c): r for c, r in self.recipients.items()},
            content=NotificationContent(body=self.body, subject=self.subject, data=self.data),
            type=self.type,
            priority=NotificationPriority[self.priority],
            scheduled_at=self.scheduled_at,
        )
        if self.id:
            notification.id = self.id
        return notification


class BulkNotificationRequest(BaseModel):
    notifications: List[NotificationRequest] = Field(..., min_length=1)
    max_concurrent: Optional[int] = Field(None, ge=1, le=100)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("", status_code=202)
async def submit_notification(
    request: NotificationRequest,
    engine: NotificationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Accept a notification; delivery happens in the background."""
    notification = request.to_notification()
    enqueued = await engine.submit(notification)
    if not enqueued:
        # id taken: report the record already held
        notification = await engine.get_notification(notification.id)
    return {
        "notification_id": notification.id,
        "enqueued": enqueued,
        "status": notification.status.value,
    }


@router.post("/bulk")
async def submit_bulk(
    request: BulkNotificationRequest,
    engine: NotificationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    notifications = [n.to_notification() for n in request.notifications]
    outcome = await engine.submit_bulk(notifications, request.max_concurrent)
    return outcome.to_dict()


@router.post("/{notification_id}/send")
async def send_now(
    notification_id: str,
    channel: str = Query(..., description="sms / email / push / in_app / chat"),
    engine: NotificationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """
    Deliver a stored notification over one channel right now.

    Failures map to typed errors: validation → 422, permanent → 502,
    transient or configuration → 503.
    """
    notification = await engine.get_notification(notification_id)
    outcome = await engine.send_now(notification, NotificationChannel.parse(channel))
    return outcome.to_dict()


@router.post("/{notification_id}/cancel")
async def cancel_notification(
    notification_id: str,
    engine: NotificationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    cancelled = await engine.cancel(notification_id)
    notification = await engine.get_notification(notification_id)
    return {
        "notification_id": notification_id,
        "cancelled": cancelled,
        "status": notification.status.value,
    }


@router.get("/{notification_id}")
async def get_notification(
    notification_id: str,
    engine: NotificationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return await engine.describe(notification_id)
