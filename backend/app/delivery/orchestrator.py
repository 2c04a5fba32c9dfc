"""
orchestrator.py — Deliver one notification over one channel.

═══════════════════════════════════════════════════════════════════════════
PIPELINE (per notification × channel)
═══════════════════════════════════════════════════════════════════════════

    1. Recipient validation ──✗──► attempt Failed / VALIDATION_ERROR
    2. Content validation   ──✗──► attempt Failed / VALIDATION_ERROR
    3. Provider usable?     ──✗──► attempt Failed / CONFIGURATION_ERROR
    4. provider.send() under asyncio.wait_for(timeout)
         timeout ──► transient failure
    5. Persist attempt: Sent | Pending | Failed | RateLimited (+ cost)
    6. Hand outcome to the Retry Scheduler (every outcome, success too)
    7. Coarse status: Sent on first success; Failed once every configured
       channel has reached a final failure.

Steps 1–3 never reach the provider, so they consume zero quota.

Steps 1–6 run under a lock per (notification, channel): attempts on one
chain are sequential and numbered 1, 2, 3 … in order.  Step 4 also holds
one of the provider's ``max_concurrent`` slots.

Outage detection: ``outage_threshold`` consecutive configuration failures
returned by the same provider disable it in the registry until an
operator calls ``ProviderRegistry.enable``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import AsyncIterator, Dict, List, Optional, Tuple

from backend.app.delivery import validation
from backend.app.delivery.models import (
    DeliveryAttempt,
    DeliveryEvent,
    DeliveryOutcome,
    DeliveryResult,
    DeliveryStatus,
    ErrorKind,
    Notification,
    NotificationChannel,
    NotificationStatus,
    SendRequest,
    utcnow,
)
from backend.app.delivery.providers.base import ChannelProvider
from backend.app.delivery.providers.registry import ProviderRegistry
from backend.app.delivery.retry import ChainState, RetryScheduler
from backend.app.delivery.store import DeliveryStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_OUTAGE_THRESHOLD = 5

# Statuses a successful send may leave an attempt in
_ACCEPTED_STATUSES = frozenset({
    DeliveryStatus.PENDING,
    DeliveryStatus.SENT,
    DeliveryStatus.DELIVERED,
})


class DeliveryOrchestrator:
    """
    Runs the per-channel delivery pipeline and records every attempt.

    Parameters
    ----------
    registry : ProviderRegistry
        Source of Channel Providers.
    store : DeliveryStore
        Persistence port for notifications and attempts.
    retry : RetryScheduler
        Receives every outcome; decides on retries.
    timeout_seconds : float
        Fallback per-call timeout when a provider config has none.
    outage_threshold : int
        Consecutive configuration failures that disable a provider.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: DeliveryStore,
        retry: RetryScheduler,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        outage_threshold: int = DEFAULT_OUTAGE_THRESHOLD,
    ) -> None:
        self.registry = registry
        self.store = store
        self.retry = retry
        self.timeout_seconds = timeout_seconds
        self.outage_threshold = outage_threshold
        self._config_failures: Dict[str, int] = {}
        # (notification id, channel) -> [lock, holders]
        self._chains: Dict[Tuple[str, NotificationChannel], list] = {}
        self._provider_slots: Dict[str, asyncio.Semaphore] = {}

    # ═══════════════════════════════════════════════════════════════════
    # Public API
    # ═══════════════════════════════════════════════════════════════════

    async def deliver_one(
        self,
        notification: Notification,
        channel: NotificationChannel,
    ) -> DeliveryOutcome:
        """Deliver ``notification`` over ``channel`` once and record the attempt."""
        if notification.status == NotificationStatus.CANCELLED:
            self.retry.cancel(notification.id)
            return DeliveryOutcome(
                notification_id=notification.id,
                channel=channel,
                success=False,
                error_kind=ErrorKind.CANCELLED,
                error_code="CANCELLED",
                error_message="Notification was cancelled",
            )

        async with self._chain(notification.id, channel):
            provider = self.registry.for_channel(channel)
            provider_name = provider.name if provider else "none"
            attempt = DeliveryAttempt(
                notification_id=notification.id,
                channel=channel,
                provider_name=provider_name,
                attempt_number=await self.store.next_attempt_number(notification.id, channel),
            )

            result, formatted = self._precheck(notification, channel, provider)
            if result is None:
                result = await self._send(provider, self._build_request(notification, formatted))
                self._track_outage(provider, result)

            outcome = await self._record(notification, attempt, result)
            self.retry.schedule(notification, outcome)
            await self._update_coarse_status(notification, outcome)
        return outcome

    async def deliver_all(self, notification: Notification) -> List[DeliveryOutcome]:
        """Deliver over every configured channel concurrently."""
        if not notification.channels:
            logger.warning("Notification %s has no channels", notification.id)
            return []
        return list(await asyncio.gather(*(
            self.deliver_one(notification, channel) for channel in notification.channels
        )))

    # ═══════════════════════════════════════════════════════════════════
    # Serialisation
    # ═══════════════════════════════════════════════════════════════════

    @contextlib.asynccontextmanager
    async def _chain(
        self,
        notification_id: str,
        channel: NotificationChannel,
    ) -> AsyncIterator[None]:
        key = (notification_id, channel)
        entry = self._chains.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._chains[key]

    def _slots_for(self, provider: ChannelProvider) -> asyncio.Semaphore:
        slots = self._provider_slots.get(provider.name)
        if slots is None:
            slots = asyncio.Semaphore(max(1, provider.config.max_concurrent))
            self._provider_slots[provider.name] = slots
        return slots

    # ═══════════════════════════════════════════════════════════════════
    # Pipeline steps
    # ═══════════════════════════════════════════════════════════════════

    def _precheck(
        self,
        notification: Notification,
        channel: NotificationChannel,
        provider: Optional[ChannelProvider],
    ) -> Tuple[Optional[DeliveryResult], Optional[str]]:
        """Steps 1–3; returns (failure, None) or (None, formatted recipient)."""
        identity = notification.recipient_for(channel)
        check = (
            provider.validate_recipient(identity) if provider and identity is not None
            else validation.validate(channel, identity)
        )
        if not check.is_valid:
            return DeliveryResult.failure("VALIDATION_ERROR", check.reason, ErrorKind.VALIDATION), None

        content_error = validation.validate_content(channel, notification.content.body)
        if content_error:
            return DeliveryResult.failure("VALIDATION_ERROR", content_error, ErrorKind.VALIDATION), None

        if provider is None:
            return DeliveryResult.failure(
                "CONFIGURATION_ERROR",
                f"No provider registered for channel {channel.value}",
                ErrorKind.CONFIGURATION,
            ), None
        if self.registry.is_disabled(provider.name):
            return DeliveryResult.failure(
                "CONFIGURATION_ERROR",
                f"Provider {provider.name} is disabled: {self.registry.disabled_reason(provider.name)}",
                ErrorKind.CONFIGURATION,
            ), None
        if not provider.is_available():
            return DeliveryResult.failure(
                "CONFIGURATION_ERROR",
                f"Provider {provider.name} is not configured",
                ErrorKind.CONFIGURATION,
            ), None
        return None, check.formatted_identity or identity

    @staticmethod
    def _build_request(
        notification: Notification,
        recipient: Optional[str],
    ) -> SendRequest:
        return SendRequest(
            recipient=recipient or "",
            body=notification.content.body,
            subject=notification.content.subject,
            priority=notification.priority,
            data=dict(notification.content.data),
            reference=notification.id,
        )

    async def _send(self, provider: ChannelProvider, request: SendRequest) -> DeliveryResult:
        timeout = provider.config.timeout_seconds or self.timeout_seconds
        async with self._slots_for(provider):
            return await self._call_provider(provider, request, timeout)

    async def _call_provider(
        self,
        provider: ChannelProvider,
        request: SendRequest,
        timeout: float,
    ) -> DeliveryResult:
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(provider.send(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "[%s] Send to %s timed out after %.1fs", provider.name, request.recipient, timeout,
                extra={"provider": provider.name, "notification_id": request.reference},
            )
            return DeliveryResult.failure(
                "TIMEOUT", f"Provider call exceeded {timeout:.1f}s", ErrorKind.TRANSIENT,
            )
        except Exception as exc:
            logger.exception("[%s] Provider raised during send: %s", provider.name, exc)
            return DeliveryResult.failure("PROVIDER_EXCEPTION", str(exc), ErrorKind.TRANSIENT)
        logger.debug(
            "[%s] send took %.1f ms", provider.name, (time.perf_counter() - start) * 1000,
        )
        return result

    def _track_outage(self, provider: Optional[ChannelProvider], result: DeliveryResult) -> None:
        if provider is None:
            return
        if result.success or result.error_kind != ErrorKind.CONFIGURATION:
            self._config_failures.pop(provider.name, None)
            return
        count = self._config_failures.get(provider.name, 0) + 1
        self._config_failures[provider.name] = count
        if count >= self.outage_threshold:
            self.registry.disable(
                provider.name,
                f"{count} consecutive configuration failures (last: {result.error_message})",
            )

    async def _record(
        self,
        notification: Notification,
        attempt: DeliveryAttempt,
        result: DeliveryResult,
    ) -> DeliveryOutcome:
        """Persist the attempt (step 5) and build the outcome."""
        if result.success:
            attempt.delivery_status = (
                result.status if result.status in _ACCEPTED_STATUSES else DeliveryStatus.SENT
            )
            attempt.provider_message_id = result.provider_message_id
            attempt.cost = result.cost
            attempt.currency = result.currency
            attempt.segments = result.segments
        else:
            attempt.delivery_status = (
                result.status if result.status.is_failure else DeliveryStatus.FAILED
            )
            attempt.error_code = result.error_code
            attempt.error_message = result.error_message
            attempt.error_kind = result.error_kind
        attempt.last_updated_at = utcnow()
        await self.store.save_delivery_attempt(attempt)

        if result.success and result.raw_status:
            await self.store.append_delivery_event(
                attempt.attempt_id,
                DeliveryEvent(
                    raw_status=result.raw_status,
                    status=attempt.delivery_status,
                    occurred_at=result.sent_at,
                    payload={"source": "send"},
                ),
            )

        log_extra = {
            "notification_id": notification.id,
            "attempt_id": attempt.attempt_id,
            "attempt_number": attempt.attempt_number,
            "channel": attempt.channel.value,
            "provider": attempt.provider_name,
            "delivery_status": attempt.delivery_status.value,
        }
        if result.success:
            logger.info(
                "Delivered %s via %s (attempt %d): %s",
                notification.id, attempt.channel.value, attempt.attempt_number,
                attempt.delivery_status.value, extra=log_extra,
            )
        else:
            log_extra["error_kind"] = result.error_kind.value if result.error_kind else None
            logger.warning(
                "Delivery of %s via %s failed (attempt %d): %s %s",
                notification.id, attempt.channel.value, attempt.attempt_number,
                result.error_code, result.error_message, extra=log_extra,
            )

        return DeliveryOutcome(
            notification_id=notification.id,
            channel=attempt.channel,
            success=result.success,
            attempt=attempt,
            error_kind=result.error_kind,
            error_code=result.error_code,
            error_message=result.error_message,
            retry_after_seconds=result.retry_after_seconds,
        )

    async def _update_coarse_status(
        self,
        notification: Notification,
        outcome: DeliveryOutcome,
    ) -> None:
        changed = False
        if outcome.success:
            changed = notification.transition_to(NotificationStatus.SENT)
        elif all(
            self.retry.final_state(notification.id, ch) in (ChainState.EXHAUSTED, ChainState.ABANDONED)
            for ch in notification.channels
        ):
            changed = notification.transition_to(NotificationStatus.FAILED)
        if changed:
            logger.info(
                "Notification %s is now %s", notification.id, notification.status.value,
                extra={"notification_id": notification.id},
            )
        await self.store.save_notification(notification)
