"""
dispatcher.py — Bounded fan-out / fan-in for bulk sends.

═══════════════════════════════════════════════════════════════════════════
WORKER POOL
═══════════════════════════════════════════════════════════════════════════

    requests ──► asyncio.Queue ──► worker 1 ─┐
                                 ► worker 2 ─┼──► results[index]
                                 ► worker N ─┘

    N = min(max_concurrent, len(requests)), so at most ``max_concurrent``
    handler calls are in flight at any instant.  Each worker writes only
    the slot of the item it pulled; totals are reduced after the join,
    so no counter is shared between workers.

Partial failure: a handler exception is captured into that item's result
and never aborts the batch.  Cancellation: the ``cancel_event`` is checked
before each new item is started; in-flight calls run to completion and
items never started are reported as CANCELLED failures.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import (
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Sequence,
    TypeVar,
)

from backend.app.delivery.models import (
    BulkOutcome,
    DeliveryOutcome,
    ErrorKind,
    Notification,
    NotificationChannel,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 10

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class DispatchRequest:
    """One unit of bulk work: deliver a notification over one channel."""
    notification: Notification
    channel: NotificationChannel


@dataclass
class SlotResult(Generic[R]):
    result: Optional[R] = None
    error: Optional[BaseException] = None
    started: bool = False


async def run_bounded(
    items: Sequence[T],
    handler: Callable[[T], Awaitable[R]],
    *,
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    cancel_event: Optional[asyncio.Event] = None,
) -> List[SlotResult[R]]:
    """
    Run ``handler`` over ``items`` with at most ``max_concurrent`` in flight.

    Returns one slot per input item, in input order.
    """
    if max_concurrent < 1:
        raise ValueError("max_concurrent must be at least 1")

    slots: List[SlotResult[R]] = [SlotResult() for _ in items]
    if not items:
        return slots

    queue: "asyncio.Queue[int]" = asyncio.Queue()
    for index in range(len(items)):
        queue.put_nowait(index)

    async def worker() -> None:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                return
            try:
                index = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            slot = slots[index]
            slot.started = True
            try:
                slot.result = await handler(items[index])
            except Exception as exc:
                logger.exception("Bulk item %d raised: %s", index, exc)
                slot.error = exc

    workers = [
        asyncio.create_task(worker())
        for _ in range(min(max_concurrent, len(items)))
    ]
    await asyncio.gather(*workers)
    return slots


class BoundedBulkDispatcher:
    """
    Fans a batch of (notification, channel) requests out to a delivery
    handler (normally ``DeliveryOrchestrator.deliver_one``) and folds the
    outcomes into a BulkOutcome.
    """

    def __init__(
        self,
        deliver: Callable[[Notification, NotificationChannel], Awaitable[DeliveryOutcome]],
        *,
        default_max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    ) -> None:
        self._deliver = deliver
        self.default_max_concurrent = default_max_concurrent

    async def dispatch(
        self,
        requests: Sequence[DispatchRequest],
        max_concurrent: Optional[int] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkOutcome:
        limit = max_concurrent or self.default_max_concurrent
        started = utcnow()
        logger.info(
            "Dispatching %d requests (max_concurrent=%d)", len(requests), limit,
            extra={"batch_size": len(requests)},
        )

        async def handle(request: DispatchRequest) -> DeliveryOutcome:
            return await self._deliver(request.notification, request.channel)

        slots = await run_bounded(
            requests, handle, max_concurrent=limit, cancel_event=cancel_event,
        )

        outcomes = [
            _slot_to_outcome(request, slot)
            for request, slot in zip(requests, slots)
        ]
        bulk = aggregate_outcomes(outcomes)
        bulk.started_at = started
        bulk.completed_at = utcnow()

        logger.info(
            "Bulk dispatch complete: %d/%d succeeded, %d failed, %d cancelled",
            bulk.success_count, bulk.total_processed,
            bulk.failure_count, bulk.cancelled_count,
        )
        return bulk


def _slot_to_outcome(request: DispatchRequest, slot: SlotResult[DeliveryOutcome]) -> DeliveryOutcome:
    if slot.result is not None:
        return slot.result
    if not slot.started:
        return DeliveryOutcome(
            notification_id=request.notification.id,
            channel=request.channel,
            success=False,
            error_kind=ErrorKind.CANCELLED,
            error_code="CANCELLED",
            error_message="Dispatch cancelled before this item started",
        )
    return DeliveryOutcome(
        notification_id=request.notification.id,
        channel=request.channel,
        success=False,
        error_kind=ErrorKind.TRANSIENT,
        error_code="UNEXPECTED_ERROR",
        error_message=str(slot.error) if slot.error else "No outcome recorded",
    )


def aggregate_outcomes(outcomes: List[DeliveryOutcome]) -> BulkOutcome:
    """Reduce per-item outcomes; cost is summed per currency."""
    bulk = BulkOutcome(total_processed=len(outcomes), outcomes=outcomes)
    cost_by_currency: Dict[str, Decimal] = {}
    for outcome in outcomes:
        if outcome.success:
            bulk.success_count += 1
            if outcome.cost is not None:
                currency = outcome.currency or "UNKNOWN"
                cost_by_currency[currency] = (
                    cost_by_currency.get(currency, Decimal("0")) + outcome.cost
                )
        else:
            bulk.failure_count += 1
            if outcome.error_kind == ErrorKind.CANCELLED:
                bulk.cancelled_count += 1
    bulk.cost_by_currency = cost_by_currency
    return bulk
