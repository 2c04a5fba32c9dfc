"""
engine.py — NotificationEngine facade + background workers.

    submit(notification)         → enqueue (scheduled ones held until due)
    submit_bulk(notifications)   → bounded fan-out, BulkOutcome
    send_now(notification, ch)   → single send, raises typed errors
    cancel(notification_id)      → Cancelled; drops held and waiting retries
    handle_webhook(provider, p)  → Status Reconciler

Background loops (``start`` / ``stop``):

    submit workers   pull from the submit queue → Orchestrator.deliver_all
    retry loop       every RETRY_POLL_INTERVAL_SECONDS: release due scheduled
                     notifications, run due retries
    status poll loop every STATUS_POLL_INTERVAL_SECONDS: poll unsettled
                     attempts for providers without webhooks

All loops stop on the same ``asyncio.Event``, checked before each new
unit of work; in-flight provider calls run to completion.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict, List, Optional, Sequence

from backend.app.core.config import Settings
from backend.app.core.errors import NotFoundError, ValidationError
from backend.app.delivery.dispatcher import BoundedBulkDispatcher, DispatchRequest
from backend.app.delivery.models import (
    AccountBalance,
    BulkOutcome,
    DeliveryOutcome,
    Notification,
    NotificationChannel,
    NotificationStatus,
    utcnow,
)
from backend.app.delivery.orchestrator import DeliveryOrchestrator
from backend.app.delivery.providers.registry import ProviderRegistry, build_providers
from backend.app.delivery.reconciler import StatusReconciler, WebhookSummary
from backend.app.delivery.retry import RetryPolicy, RetryScheduler
from backend.app.delivery.store import DeliveryStore, InMemoryDeliveryStore

logger = logging.getLogger(__name__)

_SUBMITTABLE = (NotificationStatus.PENDING, NotificationStatus.SCHEDULED)


class NotificationEngine:
    """Wires the delivery components together and owns the background loops."""

    def __init__(
        self,
        registry: ProviderRegistry,
        store: Optional[DeliveryStore] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        jitter: bool = True,
        max_concurrent: int = 10,
        timeout_seconds: float = 15.0,
        outage_threshold: int = 5,
        submit_workers: int = 4,
        retry_poll_interval: float = 5.0,
        status_poll_interval: float = 300.0,
    ) -> None:
        self.registry = registry
        self.store: DeliveryStore = store if store is not None else InMemoryDeliveryStore()
        self.retry = RetryScheduler(
            retry_policy,
            policy_for=self._provider_retry_policy,
            jitter=jitter,
        )
        self.orchestrator = DeliveryOrchestrator(
            registry,
            self.store,
            self.retry,
            timeout_seconds=timeout_seconds,
            outage_threshold=outage_threshold,
        )
        self.dispatcher = BoundedBulkDispatcher(
            self.orchestrator.deliver_one, default_max_concurrent=max_concurrent,
        )
        self.reconciler = StatusReconciler(registry, self.store)

        self.max_concurrent = max_concurrent
        self.submit_workers = submit_workers
        self.retry_poll_interval = retry_poll_interval
        self.status_poll_interval = status_poll_interval

        self._queue: "asyncio.Queue[Notification]" = asyncio.Queue()
        self._held: Dict[str, Notification] = {}
        self._tasks: List[asyncio.Task] = []
        self._stop_event = asyncio.Event()

    def _provider_retry_policy(self, channel: NotificationChannel) -> Optional[RetryPolicy]:
        provider = self.registry.for_channel(channel)
        return provider.config.retry_policy if provider else None

    # ═══════════════════════════════════════════════════════════════════
    # Submission
    # ═══════════════════════════════════════════════════════════════════

    async def submit(self, notification: Notification) -> bool:
        """
        Accept a notification for asynchronous delivery.

        Returns False when the notification is not in a submittable state
        (already sent, failed or cancelled) or its id was accepted before.
        The stored record is never replaced.
        """
        _require_channels(notification)
        if not await self._admissible(notification):
            return False

        if not notification.is_due():
            notification.status = NotificationStatus.SCHEDULED
            self._held[notification.id] = notification
            await self.store.save_notification(notification)
            logger.info(
                "Notification %s held until %s",
                notification.id, notification.scheduled_at.isoformat(),
                extra={"notification_id": notification.id},
            )
            return True

        await self.store.save_notification(notification)
        self._queue.put_nowait(notification)
        logger.info(
            "Notification %s enqueued for %s",
            notification.id, ", ".join(c.value for c in notification.channels),
            extra={"notification_id": notification.id},
        )
        return True

    async def submit_bulk(
        self,
        notifications: Sequence[Notification],
        max_concurrent: Optional[int] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkOutcome:
        """
        Deliver many notifications now under a concurrency cap.

        Each (notification, channel) pair is one dispatch item.  Notifications
        scheduled for later are held like ``submit`` does and are not part of
        the returned outcome; neither are ones ``submit`` would refuse.
        """
        requests: List[DispatchRequest] = []
        for notification in notifications:
            _require_channels(notification)
            if not notification.is_due():
                await self.submit(notification)
                continue
            if not await self._admissible(notification):
                continue
            await self.store.save_notification(notification)
            requests.extend(DispatchRequest(notification, ch) for ch in notification.channels)
        return await self.dispatcher.dispatch(
            requests, max_concurrent or self.max_concurrent, cancel_event=cancel_event,
        )

    async def send_now(
        self,
        notification: Notification,
        channel: NotificationChannel,
    ) -> DeliveryOutcome:
        """
        Single synchronous send; failures raise the matching typed error.

        When the id is already stored, the stored record is the one
        delivered and updated.
        """
        stored = await self.store.load_notification(notification.id)
        target = stored if stored is not None else notification
        if channel not in target.recipients:
            raise ValidationError(
                f"Notification has no recipient for channel {channel.value}",
                field="channel",
            )
        if stored is None:
            await self.store.save_notification(notification)
        outcome = await self.orchestrator.deliver_one(target, channel)
        outcome.raise_for_error()
        return outcome

    async def _admissible(self, notification: Notification) -> bool:
        if notification.status not in _SUBMITTABLE:
            reason = f"status is {notification.status.value}"
        elif await self.store.load_notification(notification.id) is not None:
            reason = "id already accepted"
        else:
            return True
        logger.warning(
            "Notification %s not submitted: %s", notification.id, reason,
            extra={"notification_id": notification.id},
        )
        return False

    async def process_queue(self) -> int:
        """Drain the submit queue inline; returns notifications processed."""
        processed = 0
        while not self._queue.empty():
            notification = self._queue.get_nowait()
            try:
                await self.orchestrator.deliver_all(notification)
            finally:
                self._queue.task_done()
            processed += 1
        return processed

    async def release_due(self) -> int:
        """Move held notifications whose time has come onto the submit queue."""
        now = utcnow()
        due = [n for n in self._held.values() if n.is_due(now)]
        for notification in due:
            del self._held[notification.id]
            if notification.status == NotificationStatus.SCHEDULED:
                self._queue.put_nowait(notification)
        if due:
            logger.info("Released %d scheduled notifications", len(due))
        return len(due)

    # ═══════════════════════════════════════════════════════════════════
    # Lookup / control
    # ═══════════════════════════════════════════════════════════════════

    async def get_notification(self, notification_id: str) -> Notification:
        notification = await self.store.load_notification(notification_id)
        if notification is None:
            raise NotFoundError("Notification", id=notification_id)
        return notification

    async def describe(self, notification_id: str) -> Dict[str, Any]:
        """Coarse status plus every attempt with its event history."""
        notification = await self.get_notification(notification_id)
        attempts = await self.store.list_attempts(notification_id)
        body = notification.to_dict()
        body["attempts"] = [a.to_dict() for a in attempts]
        body["pending_retries"] = [
            e.to_dict() for e in self.retry.pending() if e.notification.id == notification_id
        ]
        return body

    async def cancel(self, notification_id: str) -> bool:
        notification = await self.get_notification(notification_id)
        if not notification.transition_to(NotificationStatus.CANCELLED):
            return False
        self._held.pop(notification_id, None)
        dropped = self.retry.cancel(notification_id)
        await self.store.save_notification(notification)
        logger.info(
            "Notification %s cancelled (%d waiting retries dropped)", notification_id, dropped,
            extra={"notification_id": notification_id},
        )
        return True

    async def handle_webhook(self, provider_name: str, payload: Any) -> WebhookSummary:
        return await self.reconciler.handle_webhook(provider_name, payload)

    async def provider_status(self, include_balance: bool = True) -> List[Dict[str, Any]]:
        entries = self.registry.describe()
        if include_balance:
            for entry in entries:
                provider = self.registry.get(entry["name"])
                balance = await provider.get_account_balance() if provider else AccountBalance.unknown()
                entry["balance"] = balance.to_dict()
        return entries

    # ═══════════════════════════════════════════════════════════════════
    # Background workers
    # ═══════════════════════════════════════════════════════════════════

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize() + len(self._held)

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._submit_worker(i), name=f"submit-worker-{i}")
            for i in range(self.submit_workers)
        ]
        self._tasks.append(asyncio.create_task(self._retry_loop(), name="retry-loop"))
        self._tasks.append(asyncio.create_task(self._status_poll_loop(), name="status-poll"))
        logger.info("Notification engine started (%d submit workers)", self.submit_workers)

    async def stop(self) -> None:
        """Signal every loop and wait; deliveries already underway finish."""
        self._stop_event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.registry.aclose()
        logger.info("Notification engine stopped")

    async def _next_queued(self) -> Optional[Notification]:
        """Next queued notification, or None once stop is signalled."""
        getter = asyncio.ensure_future(self._queue.get())
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not getter.done():
                getter.cancel()
        if getter.cancelled() or not getter.done():
            return None
        notification = getter.result()
        if self._stop_event.is_set():
            # stays queued for the next start() or process_queue()
            self._queue.put_nowait(notification)
            self._queue.task_done()
            return None
        return notification

    async def _submit_worker(self, index: int) -> None:
        while not self._stop_event.is_set():
            notification = await self._next_queued()
            if notification is None:
                return
            try:
                await self.orchestrator.deliver_all(notification)
            except Exception as exc:
                logger.exception(
                    "Submit worker %d failed on %s: %s", index, notification.id, exc,
                )
            finally:
                self._queue.task_done()

    async def _retry_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.release_due()
                await self.retry.run_due(
                    self.orchestrator.deliver_one, cancel_event=self._stop_event,
                )
            except Exception as exc:
                logger.exception("Retry loop iteration failed: %s", exc)
            await self._wait(self.retry_poll_interval)

    async def _status_poll_loop(self) -> None:
        while not self._stop_event.is_set():
            await self._wait(self.status_poll_interval)
            if self._stop_event.is_set():
                return
            try:
                await self.reconciler.poll_pending(self.max_concurrent)
            except Exception as exc:
                logger.exception("Status poll failed: %s", exc)

    async def _wait(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)


def _require_channels(notification: Notification) -> None:
    if not notification.recipients:
        raise ValidationError("Notification needs at least one channel", field="recipients")


def build_engine(
    settings: Settings,
    store: Optional[DeliveryStore] = None,
    registry: Optional[ProviderRegistry] = None,
) -> NotificationEngine:
    """Assemble an engine from settings (providers built from credentials)."""
    return NotificationEngine(
        registry or build_providers(settings),
        store,
        retry_policy=settings.default_retry_policy(),
        max_concurrent=settings.DELIVERY_MAX_CONCURRENT,
        timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        outage_threshold=settings.PROVIDER_OUTAGE_THRESHOLD,
        submit_workers=settings.SUBMIT_WORKERS,
        retry_poll_interval=settings.RETRY_POLL_INTERVAL_SECONDS,
        status_poll_interval=settings.STATUS_POLL_INTERVAL_SECONDS,
    )
