"""
Health report for the engine and each registered Channel Provider.

    Component          healthy            degraded               unhealthy
    ─────────────────  ─────────────────  ─────────────────────  ─────────────────
    provider:<name>    configured, on     credentials missing    outage switch off
    engine             workers running    workers expected but   (never)
                       or not expected    stopped

The overall report is unhealthy when no provider is healthy, since nothing
can be delivered; it is degraded when any single component is not healthy.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, Iterator, List

from backend.app.core.config import settings

if TYPE_CHECKING:
    from backend.app.delivery.engine import NotificationEngine
    from backend.app.delivery.providers.base import ChannelProvider

logger = logging.getLogger(__name__)

_PROCESS_STARTED = time.monotonic()


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def mark(self, status: HealthStatus, message: str) -> None:
        self.status = status
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
            "message": self.message,
            "details": self.details,
        }
        return {k: v for k, v in out.items() if v or k in ("name", "status", "latency_ms")}


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = field(default_factory=lambda: settings.APP_VERSION)
    environment: str = field(default_factory=lambda: settings.ENVIRONMENT)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    uptime_seconds: float = field(default_factory=lambda: time.monotonic() - _PROCESS_STARTED)
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp,
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


@contextmanager
def _timed(component: ComponentHealth) -> Iterator[ComponentHealth]:
    started = time.perf_counter()
    try:
        yield component
    finally:
        component.latency_ms = (time.perf_counter() - started) * 1000


async def check_provider(
    engine: "NotificationEngine",
    provider: "ChannelProvider",
    probe_balance: bool = False,
) -> ComponentHealth:
    comp = ComponentHealth(
        name=f"provider:{provider.name}",
        details={"channel": provider.channel.value},
    )
    with _timed(comp):
        if engine.registry.is_disabled(provider.name):
            comp.mark(
                HealthStatus.UNHEALTHY,
                f"Disabled: {engine.registry.disabled_reason(provider.name)}",
            )
        elif not provider.is_available():
            comp.mark(HealthStatus.DEGRADED, "Credentials not configured")
        else:
            comp.mark(HealthStatus.HEALTHY, "Ready")
            if probe_balance:
                # an "unknown" balance is informational only
                comp.details["balance"] = (await provider.get_account_balance()).to_dict()
    return comp


async def check_engine(engine: "NotificationEngine") -> ComponentHealth:
    comp = ComponentHealth(name="engine")
    with _timed(comp):
        comp.details = {
            "running": engine.running,
            "queue_depth": engine.queue_depth,
            "pending_retries": len(engine.retry.pending()),
        }
        if settings.BACKGROUND_WORKERS_ENABLED and not engine.running:
            comp.mark(HealthStatus.DEGRADED, "Background workers are not running")
        else:
            comp.mark(HealthStatus.HEALTHY, "Accepting notifications")
    return comp


def _overall(engine_health: ComponentHealth, providers: Iterable[ComponentHealth]) -> HealthStatus:
    provider_states = [c.status for c in providers]
    if HealthStatus.HEALTHY not in provider_states:
        return HealthStatus.UNHEALTHY
    if engine_health.status is HealthStatus.HEALTHY and all(
        s is HealthStatus.HEALTHY for s in provider_states
    ):
        return HealthStatus.HEALTHY
    return HealthStatus.DEGRADED


async def run_health_check(
    engine: "NotificationEngine",
    probe_balance: bool = False,
) -> HealthReport:
    """Check the engine and every registered provider."""
    engine_health = await check_engine(engine)
    provider_health = [
        await check_provider(engine, provider, probe_balance)
        for provider in engine.registry.all()
    ]

    report = HealthReport(components=[engine_health, *provider_health])
    report.status = _overall(engine_health, provider_health)
    if report.status is not HealthStatus.HEALTHY:
        logger.debug("Health check reported %s", report.status.value)
    return report
