"""
retry.py — Failure classification and retry scheduling.

═══════════════════════════════════════════════════════════════════════════
RETRY POLICY
═══════════════════════════════════════════════════════════════════════════

State per (notification, channel) chain, not per notification:

    Failed attempt ──► WaitingRetry ──(due)──► new attempt ──► Sent | Failed
                            │
                            └── attempts exhausted ──► Exhausted (final)

    Failure kind                        Retried?   Wait before next attempt
    ─────────────────────────────       ────────   ─────────────────────────────
    transient (timeout, 5xx)            yes        base × backoff^(n-1) ± jitter
    transient + RateLimited status      yes        max(cooldown, Retry-After)
    permanent (invalid, blocked, unsub) no         —
    validation / configuration          no         —
    cancelled                           no         —

``max_attempts`` counts the first try: with the default of 3 a chain
makes exactly three provider attempts before it is marked exhausted.

Per-chain ordering is strictly sequential: a chain has at most one
pending retry, and a due retry is removed from the waiting set before
its attempt starts, so attempt N+1 never starts before attempt N's
outcome has been recorded.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from backend.app.delivery.models import (
    DeliveryOutcome,
    DeliveryStatus,
    ErrorKind,
    Notification,
    NotificationChannel,
    utcnow,
)

logger = logging.getLogger(__name__)

DeliverFn = Callable[[Notification, NotificationChannel], Awaitable[DeliveryOutcome]]
ChainKey = Tuple[str, NotificationChannel]


# ═══════════════════════════════════════════════════════════════════════════
# Policy
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryPolicy:
    """Retry parameters; providers may carry their own override."""
    max_attempts: int = 3
    backoff_base: float = 2.0
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 600.0
    rate_limit_cooldown_seconds: float = 60.0
    jitter_ratio: float = 0.2  # ±20 %


def compute_backoff(
    policy: RetryPolicy,
    attempt: int,
    *,
    jitter: bool = True,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Compute delay before the retry that follows ``attempt``.

    Parameters
    ----------
    policy : RetryPolicy
    attempt : int
        Number of the attempt that just failed (1-based).
    jitter : bool
        If True, spread the delay by ±jitter_ratio.

    Returns
    -------
    float
        Delay in seconds, never above ``max_delay_seconds``.
    """
    delay = policy.base_delay_seconds * (policy.backoff_base ** (attempt - 1))
    delay = min(delay, policy.max_delay_seconds)
    if jitter and policy.jitter_ratio > 0:
        spread = delay * policy.jitter_ratio
        delay += (rng or random).uniform(-spread, spread)
    return max(0.0, min(delay, policy.max_delay_seconds))


def is_retryable(outcome: DeliveryOutcome) -> bool:
    """Only transient failures are retried."""
    return not outcome.success and outcome.error_kind == ErrorKind.TRANSIENT


def is_rate_limited(outcome: DeliveryOutcome) -> bool:
    return outcome.delivery_status == DeliveryStatus.RATE_LIMITED


# ═══════════════════════════════════════════════════════════════════════════
# Chain State
# ═══════════════════════════════════════════════════════════════════════════

class ChainState(str, Enum):
    WAITING_RETRY = "WaitingRetry"
    SUCCEEDED     = "Succeeded"
    EXHAUSTED     = "Exhausted"
    ABANDONED     = "Abandoned"  # non-retryable failure


@dataclass
class RetryEntry:
    """Retry bookkeeping for one (notification, channel) chain."""
    notification: Notification
    channel: NotificationChannel
    attempts_made: int
    next_attempt_at: datetime
    last_error_kind: Optional[ErrorKind] = None
    last_error_message: Optional[str] = None
    state: ChainState = ChainState.WAITING_RETRY

    @property
    def key(self) -> ChainKey:
        return (self.notification.id, self.channel)

    def to_dict(self) -> Dict[str, object]:
        return {
            "notification_id": self.notification.id,
            "channel": self.channel.value,
            "attempts_made": self.attempts_made,
            "next_attempt_at": self.next_attempt_at.isoformat(),
            "state": self.state.value,
            "last_error_kind": (
                self.last_error_kind.value if self.last_error_kind else None
            ),
            "last_error_message": self.last_error_message,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Scheduler
# ═══════════════════════════════════════════════════════════════════════════

class RetryScheduler:
    """
    Consumes failed outcomes, keeps retryable chains waiting with backoff,
    and records which chains have reached a final state.
    """

    def __init__(
        self,
        default_policy: Optional[RetryPolicy] = None,
        *,
        policy_for: Optional[Callable[[NotificationChannel], Optional[RetryPolicy]]] = None,
        jitter: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.default_policy = default_policy or RetryPolicy()
        self._policy_for = policy_for
        self._jitter = jitter
        self._clock = clock
        self._waiting: Dict[ChainKey, RetryEntry] = {}
        self._final: Dict[ChainKey, ChainState] = {}

    # ── Policy lookup ──

    def policy(self, channel: NotificationChannel) -> RetryPolicy:
        if self._policy_for is not None:
            override = self._policy_for(channel)
            if override is not None:
                return override
        return self.default_policy

    def should_retry(self, outcome: DeliveryOutcome) -> bool:
        if not is_retryable(outcome):
            return False
        return outcome.attempt_number < self.policy(outcome.channel).max_attempts

    def next_delay(self, outcome: DeliveryOutcome) -> float:
        policy = self.policy(outcome.channel)
        if is_rate_limited(outcome):
            return max(
                policy.rate_limit_cooldown_seconds,
                outcome.retry_after_seconds or 0.0,
            )
        return compute_backoff(policy, outcome.attempt_number, jitter=self._jitter)

    # ── State transitions ──

    def schedule(self, notification: Notification, outcome: DeliveryOutcome) -> Optional[RetryEntry]:
        """
        Record an outcome for its chain.

        Returns the waiting RetryEntry if a retry was scheduled, else None
        (success, non-retryable failure, or attempts exhausted).
        """
        key: ChainKey = (outcome.notification_id, outcome.channel)
        self._waiting.pop(key, None)

        if outcome.success:
            self._final[key] = ChainState.SUCCEEDED
            return None

        if not is_retryable(outcome):
            self._final[key] = ChainState.ABANDONED
            return None

        if not self.should_retry(outcome):
            self._final[key] = ChainState.EXHAUSTED
            logger.warning(
                "Retries exhausted for %s via %s after %d attempts",
                outcome.notification_id, outcome.channel.value, outcome.attempt_number,
                extra={"notification_id": outcome.notification_id,
                       "channel": outcome.channel.value},
            )
            return None

        delay = self.next_delay(outcome)
        entry = RetryEntry(
            notification=notification,
            channel=outcome.channel,
            attempts_made=outcome.attempt_number,
            next_attempt_at=self._clock() + timedelta(seconds=delay),
            last_error_kind=outcome.error_kind,
            last_error_message=outcome.error_message,
        )
        self._waiting[key] = entry
        self._final.pop(key, None)
        outcome.will_retry = True
        logger.info(
            "Retry %d/%d for %s via %s in %.1fs%s",
            outcome.attempt_number + 1, self.policy(outcome.channel).max_attempts,
            outcome.notification_id, outcome.channel.value, delay,
            " (rate-limit cooldown)" if is_rate_limited(outcome) else "",
        )
        return entry

    def is_final(self, notification_id: str, channel: NotificationChannel) -> bool:
        return (notification_id, channel) in self._final

    def final_state(self, notification_id: str, channel: NotificationChannel) -> Optional[ChainState]:
        return self._final.get((notification_id, channel))

    def pending(self) -> List[RetryEntry]:
        return sorted(self._waiting.values(), key=lambda e: e.next_attempt_at)

    def due(self, now: Optional[datetime] = None) -> List[RetryEntry]:
        moment = now or self._clock()
        return [e for e in self.pending() if e.next_attempt_at <= moment]

    def cancel(self, notification_id: str) -> int:
        """Drop waiting retries for a notification (e.g. it was cancelled)."""
        keys = [k for k in self._waiting if k[0] == notification_id]
        for key in keys:
            entry = self._waiting.pop(key)
            entry.state = ChainState.ABANDONED
            self._final[key] = ChainState.ABANDONED
        return len(keys)

    # ── Execution ──

    async def run_due(
        self,
        deliver: DeliverFn,
        now: Optional[datetime] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[DeliveryOutcome]:
        """
        Execute every due retry once.

        ``deliver`` is expected to record its outcome back through
        ``schedule`` (the Orchestrator does this).  Entries are removed
        from the waiting set before their attempt starts.
        """
        outcomes: List[DeliveryOutcome] = []
        for entry in self.due(now):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Retry run cancelled; %d entries left waiting", len(self._waiting))
                break
            if self._waiting.get(entry.key) is not entry:
                continue
            del self._waiting[entry.key]
            outcomes.append(await deliver(entry.notification, entry.channel))
        return outcomes

    async def deliver_with_retry(
        self,
        deliver: DeliverFn,
        notification: Notification,
        channel: NotificationChannel,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DeliveryOutcome:
        """
        Inline retry loop: deliver, then keep waiting and retrying while
        the chain is WaitingRetry.  Returns the last outcome.
        """
        outcome = await deliver(notification, channel)
        key: ChainKey = (notification.id, channel)
        while key in self._waiting:
            if cancel_event is not None and cancel_event.is_set():
                break
            entry = self._waiting[key]
            delay = (entry.next_attempt_at - self._clock()).total_seconds()
            if delay > 0:
                await sleep(delay)
            if self._waiting.get(key) is not entry:
                break
            del self._waiting[key]
            outcome = await deliver(notification, channel)
        return outcome
