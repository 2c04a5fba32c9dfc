"""
models.py — Shared data structures for the notification delivery engine.

Defines:
    • NotificationChannel  — delivery medium enum
    • NotificationStatus   — coarse per-notification lifecycle
    • DeliveryStatus       — fine-grained per-attempt lifecycle
    • ErrorKind            — failure taxonomy carried in result values
    • Notification         — logical message for one recipient
    • DeliveryAttempt      — one provider-level try over one channel
    • Provider contract value types (SendRequest, DeliveryResult, ...)
    • DeliveryOutcome / BulkOutcome — what the engine reports to callers

═══════════════════════════════════════════════════════════════════════════
TWO-LEVEL STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

Coarse notification status (owned by Orchestrator + Reconciler):

    Pending ─┐
             ├──► Sent ──► Read
    Scheduled┤
             ├──► Failed
             └──► Cancelled

Fine-grained attempt status (canonical, provider independent):

    Pending(0) < Sent(1) < Delivered(2) < Opened(3) | Read(3) < Clicked(4)

    Bounced / Failed / Spam / Unsubscribed / Blocked / RateLimited are
    absorbing failure states.  Unknown carries no lifecycle information.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class NotificationChannel(str, Enum):
    """Available delivery channels."""
    SMS    = "sms"
    EMAIL  = "email"
    PUSH   = "push"
    IN_APP = "in_app"
    CHAT   = "chat"

    @classmethod
    def parse(cls, value: str) -> "NotificationChannel":
        """Parse case-insensitively; "Sms", "SMS" and "sms" are one channel."""
        key = value.strip().lower().replace("-", "_")
        if key == "inapp":
            key = "in_app"
        return cls(key)


class NotificationType(str, Enum):
    """Business category of a notification."""
    EXAM_REMINDER      = "ExamReminder"
    EXAM_START         = "ExamStart"
    EXAM_END           = "ExamEnd"
    GRADING_COMPLETE   = "GradingComplete"
    DEADLINE_REMINDER  = "DeadlineReminder"
    SYSTEM_ALERT       = "SystemAlert"
    WELCOME            = "Welcome"
    PASSWORD_RESET     = "PasswordReset"
    ACCOUNT_ACTIVATION = "AccountActivation"
    ROLE_ASSIGNMENT    = "RoleAssignment"


class NotificationPriority(IntEnum):
    """Integer ordering enables comparison."""
    LOW      = 1
    NORMAL   = 2
    HIGH     = 3
    URGENT   = 4
    CRITICAL = 5


class NotificationStatus(str, Enum):
    """Coarse notification lifecycle."""
    PENDING   = "Pending"
    SCHEDULED = "Scheduled"
    SENT      = "Sent"
    FAILED    = "Failed"
    CANCELLED = "Cancelled"
    READ      = "Read"

    def can_transition_to(self, target: "NotificationStatus") -> bool:
        return target in _NOTIFICATION_TRANSITIONS.get(self, frozenset())


_NOTIFICATION_TRANSITIONS: Dict[NotificationStatus, FrozenSet[NotificationStatus]] = {
    NotificationStatus.PENDING: frozenset({
        NotificationStatus.SENT,
        NotificationStatus.FAILED,
        NotificationStatus.CANCELLED,
    }),
    NotificationStatus.SCHEDULED: frozenset({
        NotificationStatus.SENT,
        NotificationStatus.FAILED,
        NotificationStatus.CANCELLED,
    }),
    NotificationStatus.SENT: frozenset({NotificationStatus.READ}),
}


class DeliveryStatus(str, Enum):
    """Canonical per-attempt delivery status."""
    PENDING      = "Pending"
    SENT         = "Sent"
    DELIVERED    = "Delivered"
    OPENED       = "Opened"
    CLICKED      = "Clicked"
    BOUNCED      = "Bounced"
    FAILED       = "Failed"
    SPAM         = "Spam"
    UNSUBSCRIBED = "Unsubscribed"
    RATE_LIMITED = "RateLimited"
    BLOCKED      = "Blocked"
    UNKNOWN      = "Unknown"
    READ         = "Read"

    @property
    def is_failure(self) -> bool:
        return self in FAILURE_STATUSES

    @property
    def is_success(self) -> bool:
        return self in SUCCESS_STATUSES


# Lifecycle rank for the success path; failure states sit outside the order.
LIFECYCLE_RANK: Dict[DeliveryStatus, int] = {
    DeliveryStatus.PENDING:   0,
    DeliveryStatus.SENT:      1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.OPENED:    3,
    DeliveryStatus.READ:      3,
    DeliveryStatus.CLICKED:   4,
}

FAILURE_STATUSES: FrozenSet[DeliveryStatus] = frozenset({
    DeliveryStatus.BOUNCED,
    DeliveryStatus.FAILED,
    DeliveryStatus.SPAM,
    DeliveryStatus.UNSUBSCRIBED,
    DeliveryStatus.BLOCKED,
    DeliveryStatus.RATE_LIMITED,
})

# Delivered or better
SUCCESS_STATUSES: FrozenSet[DeliveryStatus] = frozenset({
    DeliveryStatus.DELIVERED,
    DeliveryStatus.OPENED,
    DeliveryStatus.CLICKED,
    DeliveryStatus.READ,
})

# Events that let the coarse notification status advance Sent → Read
READ_QUALIFYING_STATUSES: FrozenSet[DeliveryStatus] = frozenset({
    DeliveryStatus.OPENED,
    DeliveryStatus.CLICKED,
    DeliveryStatus.READ,
})


class ErrorKind(str, Enum):
    """Failure taxonomy used by the retry logic."""
    VALIDATION    = "validation"
    TRANSIENT     = "transient"
    PERMANENT     = "permanent"
    CONFIGURATION = "configuration"
    CANCELLED     = "cancelled"


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


# ═══════════════════════════════════════════════════════════════════════════
# Notification
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class NotificationContent:
    """Rendered message content; templating happens upstream."""
    body: str
    subject: str = ""
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Notification:
    """
    A logical message intended for one recipient across one or more channels.

    Attributes
    ----------
    recipients : dict
        Channel → recipient identity (phone, email, device token, user id,
        chat channel id).  The keys are the notification's configured
        channels.
    status : NotificationStatus
        Coarse status; changed only through ``transition_to``.
    """
    recipients: Dict[NotificationChannel, str]
    content: NotificationContent
    type: NotificationType = NotificationType.SYSTEM_ALERT
    priority: NotificationPriority = NotificationPriority.NORMAL
    id: str = field(default_factory=lambda: _generate_id("NTF"))
    scheduled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    status: NotificationStatus = NotificationStatus.PENDING

    @property
    def channels(self) -> List[NotificationChannel]:
        return list(self.recipients)

    def recipient_for(self, channel: NotificationChannel) -> Optional[str]:
        return self.recipients.get(channel)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        if self.scheduled_at is None:
            return True
        return self.scheduled_at <= (now or utcnow())

    def transition_to(self, target: NotificationStatus) -> bool:
        """Apply a coarse status change; returns False if not allowed."""
        if self.status == target:
            return False
        if not self.status.can_transition_to(target):
            return False
        self.status = target
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "priority": self.priority.name,
            "status": self.status.value,
            "recipients": {c.value: r for c, r in self.recipients.items()},
            "subject": self.content.subject,
            "body": self.content.body,
            "scheduled_at": _iso(self.scheduled_at),
            "created_at": self.created_at.isoformat(),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Delivery Attempt
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class DeliveryEvent:
    """One provider status signal recorded against an attempt."""
    raw_status: str
    status: DeliveryStatus
    occurred_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)
    recorded_at: datetime = field(default_factory=utcnow)

    def key(self) -> tuple:
        return (self.occurred_at, self.raw_status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "raw_status": self.raw_status,
            "status": self.status.value,
            "occurred_at": self.occurred_at.isoformat(),
            "recorded_at": self.recorded_at.isoformat(),
            "payload": self.payload,
        }


@dataclass
class DeliveryAttempt:
    """Record of one provider-level try to deliver a notification."""
    notification_id: str
    channel: NotificationChannel
    provider_name: str
    attempt_number: int = 1
    attempt_id: str = field(default_factory=lambda: _generate_id("ATT"))
    provider_message_id: Optional[str] = None
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    cost: Optional[Decimal] = None
    currency: Optional[str] = None
    segments: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: datetime = field(default_factory=utcnow)
    events: List[DeliveryEvent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "notification_id": self.notification_id,
            "channel": self.channel.value,
            "provider": self.provider_name,
            "provider_message_id": self.provider_message_id,
            "attempt_number": self.attempt_number,
            "delivery_status": self.delivery_status.value,
            "cost": _money(self.cost),
            "currency": self.currency,
            "segments": self.segments,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "created_at": self.created_at.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
            "events": [e.to_dict() for e in self.events],
        }


# ═══════════════════════════════════════════════════════════════════════════
# Channel Provider Contract Types
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class SendRequest:
    """Provider-level send input."""
    recipient: str
    body: str
    subject: str = ""
    sender: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    request_delivery_receipt: bool = True
    priority: NotificationPriority = NotificationPriority.NORMAL
    data: Dict[str, Any] = field(default_factory=dict)
    reference: Optional[str] = None  # caller correlation id (notification id)


@dataclass
class DeliveryResult:
    """
    Result of ``provider.send``.

    Providers never raise for recoverable errors; they classify the
    failure into ``error_kind`` instead.
    """
    success: bool
    provider_message_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    sent_at: datetime = field(default_factory=utcnow)
    cost: Optional[Decimal] = None
    currency: Optional[str] = None
    segments: int = 1
    status: DeliveryStatus = DeliveryStatus.SENT
    raw_status: Optional[str] = None
    retry_after_seconds: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(
        cls,
        error_code: str,
        error_message: str,
        error_kind: ErrorKind,
        *,
        status: DeliveryStatus = DeliveryStatus.FAILED,
        retry_after_seconds: Optional[float] = None,
        raw_status: Optional[str] = None,
    ) -> "DeliveryResult":
        return cls(
            success=False,
            error_code=error_code,
            error_message=error_message,
            error_kind=error_kind,
            segments=0,
            status=status,
            raw_status=raw_status,
            retry_after_seconds=retry_after_seconds,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "provider_message_id": self.provider_message_id,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "sent_at": self.sent_at.isoformat(),
            "cost": _money(self.cost),
            "currency": self.currency,
            "segments": self.segments,
        }


@dataclass
class BulkDeliveryResult:
    """Result of ``provider.send_bulk``."""
    total_processed: int = 0
    success_count: int = 0
    failure_count: int = 0
    results: List[DeliveryResult] = field(default_factory=list)
    total_cost: Decimal = Decimal("0")
    currency: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "total_cost": str(self.total_cost),
            "currency": self.currency,
            "error_message": self.error_message,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class ValidationResult:
    """Outcome of a recipient format check."""
    is_valid: bool
    reason: str
    formatted_identity: Optional[str] = None
    can_receive: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "formatted_identity": self.formatted_identity,
            "reason": self.reason,
            "can_receive": self.can_receive,
        }


@dataclass
class DeliveryStatusSnapshot:
    """Pull-based status of a previously sent message."""
    status: DeliveryStatus
    raw_status: str
    last_updated: datetime = field(default_factory=utcnow)
    events: List[DeliveryEvent] = field(default_factory=list)
    error_details: Optional[str] = None
    final_cost: Optional[Decimal] = None
    currency: Optional[str] = None


@dataclass
class AccountBalance:
    """Provider account balance; diagnostic only."""
    balance: Optional[Decimal]
    currency: Optional[str]
    account_status: str
    last_updated: datetime = field(default_factory=utcnow)

    @classmethod
    def unknown(cls) -> "AccountBalance":
        return cls(balance=None, currency=None, account_status="unknown")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balance": _money(self.balance),
            "currency": self.currency,
            "account_status": self.account_status,
            "last_updated": self.last_updated.isoformat(),
        }


@dataclass
class ProviderCallback:
    """One status signal parsed from a provider webhook body."""
    provider_message_id: str
    raw_status: str
    occurred_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════
# Engine Outcomes
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class DeliveryOutcome:
    """What the Orchestrator reports for one (notification, channel) try."""
    notification_id: str
    channel: NotificationChannel
    success: bool
    attempt: Optional[DeliveryAttempt] = None
    error_kind: Optional[ErrorKind] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retry_after_seconds: Optional[float] = None
    will_retry: bool = False

    @property
    def cost(self) -> Optional[Decimal]:
        return self.attempt.cost if self.attempt else None

    @property
    def currency(self) -> Optional[str]:
        return self.attempt.currency if self.attempt else None

    @property
    def attempt_number(self) -> int:
        return self.attempt.attempt_number if self.attempt else 0

    @property
    def delivery_status(self) -> Optional[DeliveryStatus]:
        return self.attempt.delivery_status if self.attempt else None

    def raise_for_error(self) -> None:
        """Raise the typed error matching ``error_kind`` (no-op on success)."""
        from backend.app.core.errors import (
            ConfigurationError,
            DeliveryEngineError,
            PermanentProviderError,
            TransientProviderError,
            ValidationError,
        )

        if self.success:
            return
        provider = self.attempt.provider_name if self.attempt else self.channel.value
        message = self.error_message or "delivery failed"
        details = {
            "notification_id": self.notification_id,
            "channel": self.channel.value,
            "error_code": self.error_code,
        }
        if self.error_kind == ErrorKind.VALIDATION:
            raise ValidationError(message, field="recipient", **details)
        if self.error_kind == ErrorKind.TRANSIENT:
            raise TransientProviderError(provider, message, **details)
        if self.error_kind == ErrorKind.PERMANENT:
            raise PermanentProviderError(provider, message, **details)
        if self.error_kind == ErrorKind.CONFIGURATION:
            raise ConfigurationError(provider, message, **details)
        raise DeliveryEngineError(message, error_code="DELIVERY_CANCELLED", details=details)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "channel": self.channel.value,
            "success": self.success,
            "attempt_id": self.attempt.attempt_id if self.attempt else None,
            "attempt_number": self.attempt_number,
            "delivery_status": (
                self.delivery_status.value if self.delivery_status else None
            ),
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "will_retry": self.will_retry,
            "cost": _money(self.cost),
            "currency": self.currency,
        }


@dataclass
class BulkOutcome:
    """
    Fan-in result of a bulk dispatch.

    ``total_processed`` always equals the input count and
    ``success_count + failure_count == total_processed``.
    """
    total_processed: int = 0
    success_count: int = 0
    failure_count: int = 0
    cancelled_count: int = 0
    outcomes: List[DeliveryOutcome] = field(default_factory=list)
    cost_by_currency: Dict[str, Decimal] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def total_cost(self) -> Optional[Decimal]:
        """Single-currency total; None when currencies are mixed."""
        if not self.cost_by_currency:
            return Decimal("0")
        if len(self.cost_by_currency) > 1:
            return None
        return next(iter(self.cost_by_currency.values()))

    @property
    def currency(self) -> Optional[str]:
        if len(self.cost_by_currency) == 1:
            return next(iter(self.cost_by_currency))
        return None

    @property
    def success_rate(self) -> float:
        if self.total_processed == 0:
            return 0.0
        return self.success_count / self.total_processed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "cancelled_count": self.cancelled_count,
            "success_rate": f"{self.success_rate:.1%}",
            "total_cost": _money(self.total_cost),
            "currency": self.currency,
            "cost_by_currency": {
                cur: str(amount) for cur, amount in self.cost_by_currency.items()
            },
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }
