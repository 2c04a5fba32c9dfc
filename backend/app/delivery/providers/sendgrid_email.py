"""
sendgrid_email.py — Email delivery through the SendGrid v3 API.

    POST /v3/mail/send          send (202 Accepted, id in X-Message-Id)
    GET  /v3/messages/{msg_id}  status lookup (Email Activity API)
    GET  /v3/user/credits       remaining credits

Event Webhook posts a JSON array; each element carries ``sg_message_id``,
``event`` and ``timestamp`` (epoch seconds).  ``sg_message_id`` is the
X-Message-Id with a ``.filter…`` suffix appended, which is stripped.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping

import httpx

from backend.app.delivery.models import (
    AccountBalance,
    DeliveryResult,
    DeliveryStatus,
    DeliveryStatusSnapshot,
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


class SendGridEmailProvider(HttpProvider):
    """SendGrid implementation of the Channel Provider contract."""

    channel = NotificationChannel.EMAIL
    REQUIRED_CREDENTIALS = ("api_key",)
    REQUIRES_SENDER = True
    STATUS_MAP = {
        "processed":        DeliveryStatus.PENDING,
        "deferred":         DeliveryStatus.PENDING,
        "delivered":        DeliveryStatus.DELIVERED,
        "open":             DeliveryStatus.OPENED,
        "click":            DeliveryStatus.CLICKED,
        "bounce":           DeliveryStatus.BOUNCED,
        "dropped":          DeliveryStatus.FAILED,
        "blocked":          DeliveryStatus.BLOCKED,
        "spamreport":       DeliveryStatus.SPAM,
        "unsubscribe":      DeliveryStatus.UNSUBSCRIBED,
        "groupunsubscribe": DeliveryStatus.UNSUBSCRIBED,
        # Email Activity API message states
        "notdelivered":     DeliveryStatus.FAILED,
    }

    def _client_options(self) -> Dict[str, Any]:
        return {"headers": {"Authorization": f"Bearer {self.config.credential('api_key')}"}}

    async def _send(self, request: SendRequest) -> DeliveryResult:
        payload: Dict[str, Any] = {
            "personalizations": [{"to": [{"email": request.recipient}]}],
            "from": {"email": request.sender or self.config.sender},
            "subject": request.subject or "(no subject)",
            "content": [{"type": "text/plain", "value": request.body}],
            "tracking_settings": {
                "click_tracking": {"enable": True},
                "open_tracking": {"enable": True},
            },
        }
        if request.reference:
            payload["personalizations"][0]["custom_args"] = {"notification_id": request.reference}
        if request.scheduled_at is not None:
            payload["send_at"] = int(request.scheduled_at.timestamp())

        client = await self._get_client()
        response = await client.post("/v3/mail/send", json=payload)

        if response.status_code >= 400:
            return self._failure_from_response(response, request.recipient)

        message_id = response.headers.get("X-Message-Id")
        logger.info(
            "[%s] Email accepted for %s: id=%s", self.name, request.recipient, message_id,
            extra={"provider": self.name, "provider_message_id": message_id},
        )
        return DeliveryResult(
            success=True,
            provider_message_id=message_id,
            status=DeliveryStatus.PENDING,
            raw_status="processed",
        )

    def _failure_from_response(self, response: httpx.Response, recipient: str) -> DeliveryResult:
        try:
            errors = response.json().get("errors") or []
        except ValueError:
            errors = []
        message = "; ".join(e.get("message", "") for e in errors if isinstance(e, dict))
        logger.warning(
            "[%s] Email to %s rejected: HTTP %d %s",
            self.name, recipient, response.status_code, message,
        )
        return classify_http_failure(
            response,
            error_code=f"SENDGRID_{response.status_code}",
            error_message=message or None,
        )

    async def get_delivery_status(self, provider_message_id: str) -> DeliveryStatusSnapshot:
        try:
            client = await self._get_client()
            response = await client.get(f"/v3/messages/{provider_message_id}")
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("[%s] Status lookup failed for %s: %s", self.name, provider_message_id, exc)
            return DeliveryStatusSnapshot(
                status=DeliveryStatus.UNKNOWN, raw_status="unknown", error_details=str(exc),
            )

        raw_status = payload.get("status") or "unknown"
        # The activity feed reports "delivered" for opened mail too; opens_count refines it.
        status = self.map_status(raw_status)
        if status == DeliveryStatus.DELIVERED:
            if payload.get("clicks_count"):
                status = DeliveryStatus.CLICKED
            elif payload.get("opens_count"):
                status = DeliveryStatus.OPENED
        return DeliveryStatusSnapshot(
            status=status,
            raw_status=raw_status,
            last_updated=parse_timestamp(payload.get("last_event_time")),
        )

    async def get_account_balance(self) -> AccountBalance:
        if not self.is_available():
            return AccountBalance.unknown()
        try:
            client = await self._get_client()
            response = await client.get("/v3/user/credits")
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("[%s] Credit lookup failed: %s", self.name, exc)
            return AccountBalance.unknown()
        return AccountBalance(
            balance=parse_decimal(payload.get("remain")),
            currency="credits",
            account_status="active",
        )

    def parse_callback(self, payload: Any) -> List[ProviderCallback]:
        events = payload if isinstance(payload, list) else [payload]
        callbacks: List[ProviderCallback] = []
        for event in events:
            if not isinstance(event, Mapping):
                continue
            message_id = event.get("sg_message_id")
            raw = event.get("event")
            if not message_id or not raw:
                continue
            callbacks.append(
                ProviderCallback(
                    provider_message_id=str(message_id).split(".", 1)[0],
                    raw_status=str(raw),
                    occurred_at=parse_timestamp(event.get("timestamp")),
                    payload=dict(event),
                )
            )
        return callbacks
