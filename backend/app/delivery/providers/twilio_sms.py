"""
twilio_sms.py — SMS delivery through the Twilio REST API.

Endpoints (Basic auth: account SID + auth token):

    POST /2010-04-01/Accounts/{sid}/Messages.json        send
    GET  /2010-04-01/Accounts/{sid}/Messages/{msg}.json  status poll
    GET  /2010-04-01/Accounts/{sid}/Balance.json         account balance

Status callbacks arrive as form-encoded bodies carrying ``MessageSid``
and ``MessageStatus``.

Twilio status → canonical status:

    queued, sending, accepted, scheduled     → Pending
    sent                                     → Sent
    delivered, received, partially_delivered → Delivered
    failed, undelivered                      → Failed
    read                                     → Read
    anything else                            → Unknown
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import httpx

from backend.app.delivery.models import (
    AccountBalance,
    DeliveryEvent,
    DeliveryResult,
    DeliveryStatus,
    DeliveryStatusSnapshot,
    ErrorKind,
    NotificationChannel,
    ProviderCallback,
    SendRequest,
)
from backend.app.delivery.providers.base import (
    HttpProvider,
    classify_http_failure,
    parse_decimal,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

API_VERSION = "2010-04-01"

# Twilio error codes that say the recipient can never receive this message.
_PERMANENT_ERRORS: Dict[int, DeliveryStatus] = {
    21211: DeliveryStatus.FAILED,        # invalid 'To' number
    21212: DeliveryStatus.FAILED,        # invalid 'From' number
    21408: DeliveryStatus.BLOCKED,       # region not enabled
    21610: DeliveryStatus.UNSUBSCRIBED,  # recipient replied STOP
    21612: DeliveryStatus.FAILED,        # unroutable
    21614: DeliveryStatus.FAILED,        # not a mobile number
    30004: DeliveryStatus.BLOCKED,       # message blocked
    30005: DeliveryStatus.FAILED,        # unknown destination handset
    30006: DeliveryStatus.FAILED,        # landline or unreachable carrier
    30007: DeliveryStatus.SPAM,          # carrier filtered as spam
}
_CONFIGURATION_ERRORS = frozenset({20003, 20404, 21606, 21659})


class TwilioSmsProvider(HttpProvider):
    """Twilio SMS implementation of the Channel Provider contract."""

    channel = NotificationChannel.SMS
    REQUIRED_CREDENTIALS = ("account_sid", "auth_token")
    REQUIRES_SENDER = True
    STATUS_MAP = {
        "queued":             DeliveryStatus.PENDING,
        "sending":            DeliveryStatus.PENDING,
        "accepted":           DeliveryStatus.PENDING,
        "scheduled":          DeliveryStatus.PENDING,
        "sent":               DeliveryStatus.SENT,
        "delivered":          DeliveryStatus.DELIVERED,
        "received":           DeliveryStatus.DELIVERED,
        "partiallydelivered": DeliveryStatus.DELIVERED,
        "failed":             DeliveryStatus.FAILED,
        "undelivered":        DeliveryStatus.FAILED,
        "read":               DeliveryStatus.READ,
    }

    @property
    def account_sid(self) -> str:
        return self.config.credential("account_sid")

    def _client_options(self) -> Dict[str, Any]:
        return {"auth": (self.account_sid, self.config.credential("auth_token"))}

    def _account_path(self, suffix: str) -> str:
        return f"/{API_VERSION}/Accounts/{self.account_sid}/{suffix}"

    # ── Send ──

    async def _send(self, request: SendRequest) -> DeliveryResult:
        form: Dict[str, str] = {
            "To": request.recipient,
            "From": request.sender or self.config.sender or "",
            "Body": request.body,
        }
        if request.request_delivery_receipt and self.config.callback_url:
            form["StatusCallback"] = self.config.callback_url
        if request.scheduled_at is not None:
            form["ScheduleType"] = "fixed"
            form["SendAt"] = request.scheduled_at.isoformat()

        client = await self._get_client()
        response = await client.post(self._account_path("Messages.json"), data=form)

        if response.status_code >= 400:
            return self._failure_from_response(response, request.recipient)

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, Mapping):
            logger.warning(
                "[%s] Unreadable %d response body for %s",
                self.name, response.status_code, request.recipient,
                extra={"provider": self.name, "status_code": response.status_code},
            )
            return DeliveryResult.failure(
                "MALFORMED_RESPONSE",
                f"Twilio returned HTTP {response.status_code} without a message resource",
                ErrorKind.TRANSIENT,
            )
        raw_status = payload.get("status") or "queued"
        price = parse_decimal(payload.get("price"))
        result = DeliveryResult(
            success=True,
            provider_message_id=payload.get("sid"),
            cost=abs(price) if price is not None else None,
            currency=(payload.get("price_unit") or "USD").upper(),
            segments=int(payload.get("num_segments") or 1),
            status=self._send_status(raw_status),
            raw_status=raw_status,
        )
        logger.info(
            "[%s] SMS accepted for %s: sid=%s status=%s",
            self.name, request.recipient, result.provider_message_id, raw_status,
            extra={"provider": self.name, "provider_message_id": result.provider_message_id},
        )
        return result

    def _send_status(self, raw_status: str) -> DeliveryStatus:
        status = self.map_status(raw_status)
        if status == DeliveryStatus.UNKNOWN or status.is_failure:
            return DeliveryStatus.PENDING
        return status

    def _failure_from_response(self, response: httpx.Response, recipient: str) -> DeliveryResult:
        try:
            body = response.json()
        except ValueError:
            body = {}
        code = body.get("code")
        message = body.get("message") or response.reason_phrase
        logger.warning(
            "[%s] SMS to %s rejected: HTTP %d code=%s %s",
            self.name, recipient, response.status_code, code, message,
        )
        if isinstance(code, int):
            if code in _PERMANENT_ERRORS:
                return DeliveryResult.failure(
                    f"TWILIO_{code}", message, ErrorKind.PERMANENT,
                    status=_PERMANENT_ERRORS[code],
                )
            if code in _CONFIGURATION_ERRORS:
                return DeliveryResult.failure(
                    f"TWILIO_{code}", message, ErrorKind.CONFIGURATION,
                )
        return classify_http_failure(
            response,
            error_code=f"TWILIO_{code}" if code else None,
            error_message=message,
        )

    # ── Status / balance ──

    async def get_delivery_status(self, provider_message_id: str) -> DeliveryStatusSnapshot:
        try:
            client = await self._get_client()
            response = await client.get(self._account_path(f"Messages/{provider_message_id}.json"))
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("[%s] Status lookup failed for %s: %s", self.name, provider_message_id, exc)
            return DeliveryStatusSnapshot(
                status=DeliveryStatus.UNKNOWN, raw_status="unknown", error_details=str(exc),
            )

        payload = response.json()
        raw_status = payload.get("status") or "unknown"
        status = self.map_status(raw_status)
        updated = parse_timestamp(payload.get("date_updated"))
        price = parse_decimal(payload.get("price"))
        error_code = payload.get("error_code")
        return DeliveryStatusSnapshot(
            status=status,
            raw_status=raw_status,
            last_updated=updated,
            events=[
                DeliveryEvent(
                    raw_status=raw_status,
                    status=status,
                    occurred_at=updated,
                    payload={"error_code": error_code, "num_segments": payload.get("num_segments")},
                )
            ],
            error_details=(
                f"{error_code}: {payload.get('error_message')}" if error_code else None
            ),
            final_cost=abs(price) if price is not None else None,
            currency=(payload.get("price_unit") or "").upper() or None,
        )

    async def get_account_balance(self) -> AccountBalance:
        if not self.is_available():
            return AccountBalance.unknown()
        try:
            client = await self._get_client()
            response = await client.get(self._account_path("Balance.json"))
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("[%s] Balance lookup failed: %s", self.name, exc)
            return AccountBalance.unknown()
        return AccountBalance(
            balance=parse_decimal(payload.get("balance")),
            currency=payload.get("currency"),
            account_status="active",
        )

    # ── Webhooks ──

    def parse_callback(self, payload: Any) -> List[ProviderCallback]:
        if not isinstance(payload, Mapping):
            return []
        sid: Optional[str] = payload.get("MessageSid") or payload.get("SmsSid")
        raw: Optional[str] = payload.get("MessageStatus") or payload.get("SmsStatus")
        if not sid or not raw:
            return []
        return [
            ProviderCallback(
                provider_message_id=sid,
                raw_status=raw,
                occurred_at=parse_timestamp(payload.get("Timestamp")),
                payload=dict(payload),
            )
        ]
