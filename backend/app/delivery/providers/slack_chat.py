"""
slack_chat.py — Chat bridge delivery via the Slack Web API.

``chat.postMessage`` returns HTTP 200 for most failures and signals them
with ``{"ok": false, "error": "<code>"}``; the code decides the kind.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from backend.app.delivery.models import (
    DeliveryResult,
    DeliveryStatus,
    ErrorKind,
    NotificationChannel,
    SendRequest,
)
from backend.app.delivery.providers.base import (
    HttpProvider,
    classify_http_failure,
    retry_after_seconds,
)

logger = logging.getLogger(__name__)

_ERROR_KINDS: Dict[str, ErrorKind] = {
    "channel_not_found":  ErrorKind.PERMANENT,
    "is_archived":        ErrorKind.PERMANENT,
    "msg_too_long":       ErrorKind.PERMANENT,
    "no_text":            ErrorKind.PERMANENT,
    "not_in_channel":     ErrorKind.PERMANENT,
    "restricted_action":  ErrorKind.PERMANENT,
    "invalid_auth":       ErrorKind.CONFIGURATION,
    "not_authed":         ErrorKind.CONFIGURATION,
    "account_inactive":   ErrorKind.CONFIGURATION,
    "token_revoked":      ErrorKind.CONFIGURATION,
    "missing_scope":      ErrorKind.CONFIGURATION,
    "ratelimited":        ErrorKind.TRANSIENT,
    "internal_error":     ErrorKind.TRANSIENT,
    "service_unavailable": ErrorKind.TRANSIENT,
    "fatal_error":        ErrorKind.TRANSIENT,
}


class SlackChatProvider(HttpProvider):
    """Posts notification text into a Slack channel."""

    channel = NotificationChannel.CHAT
    REQUIRED_CREDENTIALS = ("bot_token",)
    STATUS_MAP = {"sent": DeliveryStatus.SENT, "delivered": DeliveryStatus.DELIVERED}

    def _client_options(self) -> Dict[str, Any]:
        return {"headers": {"Authorization": f"Bearer {self.config.credential('bot_token')}"}}

    async def _send(self, request: SendRequest) -> DeliveryResult:
        text = f"*{request.subject}*\n{request.body}" if request.subject else request.body
        client = await self._get_client()
        response = await client.post(
            "/chat.postMessage", json={"channel": request.recipient, "text": text},
        )
        if response.status_code >= 400:
            return classify_http_failure(response, error_code=f"SLACK_HTTP_{response.status_code}")

        payload = response.json()
        if not payload.get("ok"):
            error = payload.get("error") or "unknown_error"
            kind = _ERROR_KINDS.get(error, ErrorKind.PERMANENT)
            logger.warning("[%s] Chat post to %s failed: %s", self.name, request.recipient, error)
            if error == "ratelimited":
                return DeliveryResult.failure(
                    "SLACK_RATELIMITED", error, kind,
                    status=DeliveryStatus.RATE_LIMITED,
                    retry_after_seconds=retry_after_seconds(response),
                )
            return DeliveryResult.failure(f"SLACK_{error.upper()}", error, kind)

        # Slack message ids are channel-scoped timestamps
        message_id = f"{payload.get('channel')}:{payload.get('ts')}"
        return DeliveryResult(
            success=True,
            provider_message_id=message_id,
            status=DeliveryStatus.DELIVERED,
            raw_status="delivered",
        )
