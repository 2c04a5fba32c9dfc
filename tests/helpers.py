"""
Test helpers: a scripted in-process provider plus notification and engine
builders shared by the delivery tests.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Callable, List, Optional, Sequence, Union

from backend.app.core.config import ProviderConfig
from backend.app.delivery.engine import NotificationEngine
from backend.app.delivery.models import (
    DeliveryResult,
    DeliveryStatus,
    ErrorKind,
    Notification,
    NotificationChannel,
    NotificationContent,
    SendRequest,
)
from backend.app.delivery.providers.base import HttpProvider
from backend.app.delivery.providers.registry import ProviderRegistry
from backend.app.delivery.retry import RetryPolicy

ScriptedResult = Union[DeliveryResult, Callable[[SendRequest], DeliveryResult]]


class FakeProvider(HttpProvider):
    """Provider that returns scripted results and tracks concurrency."""

    REQUIRED_CREDENTIALS = ("key",)
    STATUS_MAP = {
        "queued":    DeliveryStatus.PENDING,
        "sent":      DeliveryStatus.SENT,
        "delivered": DeliveryStatus.DELIVERED,
        "opened":    DeliveryStatus.OPENED,
        "clicked":   DeliveryStatus.CLICKED,
        "read":      DeliveryStatus.READ,
        "failed":    DeliveryStatus.FAILED,
        "bounced":   DeliveryStatus.BOUNCED,
    }

    def __init__(
        self,
        channel: NotificationChannel = NotificationChannel.SMS,
        name: Optional[str] = None,
        *,
        results: Sequence[ScriptedResult] = (),
        delay: float = 0.0,
        available: bool = True,
        max_concurrent: int = 10,
        timeout_seconds: float = 15.0,
        currency: str = "USD",
    ) -> None:
        super().__init__(
            ProviderConfig(
                name=name or f"fake_{channel.value}",
                channel=channel,
                credentials={"key": "secret" if available else ""},
                max_concurrent=max_concurrent,
                timeout_seconds=timeout_seconds,
            )
        )
        self.channel = channel
        self.results: List[ScriptedResult] = list(results)
        self.delay = delay
        self.currency = currency
        self.calls: List[SendRequest] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def _send(self, request: SendRequest) -> DeliveryResult:
        self.calls.append(request)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.results:
                scripted = self.results.pop(0)
                return scripted(request) if callable(scripted) else scripted
            return DeliveryResult(
                success=True,
                provider_message_id=f"MSG-{self.name}-{len(self.calls)}",
                cost=Decimal("0.0075"),
                currency=self.currency,
                status=DeliveryStatus.SENT,
                raw_status="sent",
            )
        finally:
            self.in_flight -= 1


def transient(code: str = "HTTP_503") -> DeliveryResult:
    return DeliveryResult.failure(code, "Service unavailable", ErrorKind.TRANSIENT)


def permanent(code: str = "TWILIO_21211") -> DeliveryResult:
    return DeliveryResult.failure(code, "Invalid 'To' number", ErrorKind.PERMANENT)


def configuration(code: str = "HTTP_401") -> DeliveryResult:
    return DeliveryResult.failure(code, "Authenticate", ErrorKind.CONFIGURATION)


def make_notification(
    recipients: Optional[dict] = None,
    body: str = "Your exam starts at 10:00 in Hall B.",
    subject: str = "Exam reminder",
    **kwargs,
) -> Notification:
    return Notification(
        recipients=recipients if recipients is not None else {NotificationChannel.SMS: "+15551234567"},
        content=NotificationContent(body=body, subject=subject),
        **kwargs,
    )


def make_engine(*providers: FakeProvider, **kwargs) -> NotificationEngine:
    kwargs.setdefault("retry_policy", RetryPolicy(base_delay_seconds=0.0, rate_limit_cooldown_seconds=0.0))
    kwargs.setdefault("jitter", False)
    return NotificationEngine(ProviderRegistry(providers), **kwargs)


