"""
base.py — Channel Provider contract and shared HTTP plumbing.

Every provider variant (SMS, email, push, in-app, chat) exposes the same
capability set:

    is_available()               → bool           (credentials configured?)
    send(request)                → DeliveryResult (never raises for
                                                   recoverable errors)
    send_bulk(requests)          → BulkDeliveryResult
    validate_recipient(identity) → ValidationResult
    get_delivery_status(msg_id)  → DeliveryStatusSnapshot
    get_account_balance()        → AccountBalance (failures → "unknown")
    map_status(raw)              → DeliveryStatus (total; unmapped → Unknown)
    parse_callback(payload)      → list[ProviderCallback]

═══════════════════════════════════════════════════════════════════════════
HTTP FAILURE CLASSIFICATION
═══════════════════════════════════════════════════════════════════════════

    Condition                         ErrorKind        Canonical status
    ──────────────────────────        ─────────────    ────────────────
    timeout / connection error        transient        Failed
    HTTP 429                          transient        RateLimited
    HTTP 5xx                          transient        Failed
    HTTP 401 / 403                    configuration    Failed
    other 4xx                         permanent        Failed
    provider-specific codes           per provider     Failed / Blocked /
                                                       Unsubscribed

Providers own one ``httpx.AsyncClient`` each; the client is safe to share
between concurrent callers, so a provider instance is too.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import httpx

from backend.app.core.config import ProviderConfig
from backend.app.delivery import validation
from backend.app.delivery.dispatcher import run_bounded
from backend.app.delivery.models import (
    AccountBalance,
    BulkDeliveryResult,
    DeliveryResult,
    DeliveryStatus,
    DeliveryStatusSnapshot,
    ErrorKind,
    NotificationChannel,
    ProviderCallback,
    SendRequest,
    ValidationResult,
)

logger = logging.getLogger(__name__)


class ChannelProvider(Protocol):
    """Uniform capability contract implemented by every provider."""

    name: str
    channel: NotificationChannel
    config: ProviderConfig

    def is_available(self) -> bool: ...

    async def send(self, request: SendRequest) -> DeliveryResult: ...

    async def send_bulk(self, requests: Sequence[SendRequest]) -> BulkDeliveryResult: ...

    def validate_recipient(self, identity: str) -> ValidationResult: ...

    async def get_delivery_status(self, provider_message_id: str) -> DeliveryStatusSnapshot: ...

    async def get_account_balance(self) -> AccountBalance: ...

    def map_status(self, raw_status: Optional[str]) -> DeliveryStatus: ...

    def parse_callback(self, payload: Any) -> List[ProviderCallback]: ...

    async def aclose(self) -> None: ...


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def normalise_status(raw_status: Optional[str]) -> str:
    """'PartiallyDelivered', 'partially_delivered' → 'partiallydelivered'."""
    if not raw_status:
        return ""
    return "".join(ch for ch in str(raw_status).lower() if ch not in "_- ")


def parse_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def parse_timestamp(value: Any) -> datetime:
    """Epoch seconds, ISO-8601 or RFC-2822 → aware UTC datetime (now on failure)."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value:
        if value.isdigit():
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            from email.utils import parsedate_to_datetime

            try:
                parsed = parsedate_to_datetime(value)
            except (TypeError, ValueError):
                return datetime.now(timezone.utc)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def retry_after_seconds(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify_http_failure(
    response: httpx.Response,
    *,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
) -> DeliveryResult:
    """Generic status-code classification; providers refine it."""
    code = error_code or f"HTTP_{response.status_code}"
    message = error_message or response.reason_phrase or "Provider error"

    if response.status_code == 429:
        return DeliveryResult.failure(
            code, message, ErrorKind.TRANSIENT,
            status=DeliveryStatus.RATE_LIMITED,
            retry_after_seconds=retry_after_seconds(response),
        )
    if response.status_code >= 500:
        return DeliveryResult.failure(code, message, ErrorKind.TRANSIENT)
    if response.status_code in (401, 403):
        return DeliveryResult.failure(code, message, ErrorKind.CONFIGURATION)
    return DeliveryResult.failure(code, message, ErrorKind.PERMANENT)


# ═══════════════════════════════════════════════════════════════════════════
# Base Provider
# ═══════════════════════════════════════════════════════════════════════════

class HttpProvider:
    """
    Shared plumbing for providers that talk HTTP.

    Subclasses set ``channel``, ``STATUS_MAP`` and ``REQUIRED_CREDENTIALS``
    and implement ``_send``; everything else has a usable default.
    """

    channel: NotificationChannel
    STATUS_MAP: Dict[str, DeliveryStatus] = {}
    REQUIRED_CREDENTIALS: Iterable[str] = ()
    REQUIRES_SENDER: bool = False

    def __init__(
        self,
        config: ProviderConfig,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config
        self.name = config.name
        self._http_client = client
        self._owns_client = client is None

    # ── HTTP client lifecycle ──

    def _client_options(self) -> Dict[str, Any]:
        return {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self.config.base_url or "",
                timeout=self.config.timeout_seconds,
                **self._client_options(),
            )
            self._owns_client = True
        return self._http_client

    async def aclose(self) -> None:
        """Close HTTP client."""
        if self._owns_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    # ── Capability set ──

    def is_available(self) -> bool:
        if any(not self.config.credential(key) for key in self.REQUIRED_CREDENTIALS):
            return False
        if self.REQUIRES_SENDER and not self.config.sender:
            return False
        return True

    def validate_recipient(self, identity: str) -> ValidationResult:
        return validation.validate(self.channel, identity)

    def map_status(self, raw_status: Optional[str]) -> DeliveryStatus:
        return self.STATUS_MAP.get(normalise_status(raw_status), DeliveryStatus.UNKNOWN)

    async def send(self, request: SendRequest) -> DeliveryResult:
        if not self.is_available():
            return DeliveryResult.failure(
                "NOT_CONFIGURED",
                f"{self.name} credentials are not configured",
                ErrorKind.CONFIGURATION,
            )
        try:
            return await self._send(request)
        except httpx.TimeoutException as exc:
            logger.warning("[%s] Timeout sending to %s: %s", self.name, request.recipient, exc)
            return DeliveryResult.failure("TIMEOUT", str(exc) or "Provider timeout", ErrorKind.TRANSIENT)
        except httpx.TransportError as exc:
            logger.warning("[%s] Transport error sending to %s: %s", self.name, request.recipient, exc)
            return DeliveryResult.failure("NETWORK_ERROR", str(exc), ErrorKind.TRANSIENT)

    async def _send(self, request: SendRequest) -> DeliveryResult:
        raise NotImplementedError

    async def send_bulk(self, requests: Sequence[SendRequest]) -> BulkDeliveryResult:
        """Repeated ``send`` under the provider's concurrency cap."""
        slots = await run_bounded(
            list(requests), self.send, max_concurrent=self.config.max_concurrent,
        )
        results = [
            slot.result if slot.result is not None else DeliveryResult.failure(
                "UNEXPECTED_ERROR", str(slot.error), ErrorKind.TRANSIENT,
            )
            for slot in slots
        ]
        bulk = BulkDeliveryResult(total_processed=len(results), results=results)
        currencies = set()
        for result in results:
            if result.success:
                bulk.success_count += 1
                if result.cost is not None:
                    bulk.total_cost += result.cost
                    currencies.add(result.currency)
            else:
                bulk.failure_count += 1
        if len(currencies) == 1:
            bulk.currency = currencies.pop()
        elif len(currencies) > 1:
            bulk.error_message = "Mixed currencies; see per-result cost"
        logger.info(
            "[%s] Bulk send completed: %d successful, %d failed out of %d",
            self.name, bulk.success_count, bulk.failure_count, bulk.total_processed,
        )
        return bulk

    async def get_delivery_status(self, provider_message_id: str) -> DeliveryStatusSnapshot:
        return DeliveryStatusSnapshot(
            status=DeliveryStatus.UNKNOWN,
            raw_status="unsupported",
            error_details=f"{self.name} does not expose per-message status",
        )

    async def get_account_balance(self) -> AccountBalance:
        return AccountBalance.unknown()

    def parse_callback(self, payload: Any) -> List[ProviderCallback]:
        """Generic body: {"provider_message_id", "status", "timestamp"}."""
        if not isinstance(payload, Mapping):
            return []
        message_id = payload.get("provider_message_id") or payload.get("message_id")
        raw = payload.get("status") or payload.get("event")
        if not message_id or not raw:
            return []
        return [
            ProviderCallback(
                provider_message_id=str(message_id),
                raw_status=str(raw),
                occurred_at=parse_timestamp(payload.get("timestamp")),
                payload=dict(payload),
            )
        ]
