"""
fcm_push.py — Mobile push through Firebase Cloud Messaging (HTTP v1).

    POST /v1/projects/{project_id}/messages:send   (Bearer access token)

FCM exposes no per-message status or balance API, so those capabilities
report Unknown.  Error mapping uses the ``error.details[].errorCode``
field of the response body:

    UNREGISTERED, INVALID_ARGUMENT, SENDER_ID_MISMATCH  → permanent
    QUOTA_EXCEEDED (HTTP 429)                           → rate limited
    UNAVAILABLE, INTERNAL (HTTP 5xx)                    → transient
    THIRD_PARTY_AUTH_ERROR, HTTP 401/403                → configuration
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from backend.app.delivery.models import (
    DeliveryResult,
    DeliveryStatus,
    ErrorKind,
    NotificationChannel,
    NotificationPriority,
    SendRequest,
)
from backend.app.delivery.providers.base import HttpProvider, classify_http_failure

logger = logging.getLogger(__name__)

_PERMANENT_CODES = frozenset({"UNREGISTERED", "INVALID_ARGUMENT", "SENDER_ID_MISMATCH"})
_CONFIGURATION_CODES = frozenset({"THIRD_PARTY_AUTH_ERROR"})


class FcmPushProvider(HttpProvider):
    """FCM implementation of the Channel Provider contract."""

    channel = NotificationChannel.PUSH
    REQUIRED_CREDENTIALS = ("project_id", "access_token")
    STATUS_MAP = {
        "sent":      DeliveryStatus.SENT,
        "delivered": DeliveryStatus.DELIVERED,
        "opened":    DeliveryStatus.OPENED,
        "failed":    DeliveryStatus.FAILED,
    }

    def _client_options(self) -> Dict[str, Any]:
        return {"headers": {"Authorization": f"Bearer {self.config.credential('access_token')}"}}

    async def _send(self, request: SendRequest) -> DeliveryResult:
        message: Dict[str, Any] = {
            "token": request.recipient,
            "notification": {"title": request.subject, "body": request.body},
            "android": {
                "priority": "high" if request.priority >= NotificationPriority.HIGH else "normal",
            },
        }
        if request.data:
            message["data"] = {str(k): str(v) for k, v in request.data.items()}

        client = await self._get_client()
        project = self.config.credential("project_id")
        response = await client.post(
            f"/v1/projects/{project}/messages:send", json={"message": message},
        )

        if response.status_code >= 400:
            return self._failure_from_response(response)

        name = response.json().get("name")
        # "projects/p/messages/0:1500415314455276%31bd1c9631bd1c96"
        message_id = name.rsplit("/", 1)[-1] if name else None
        logger.debug("[%s] Push accepted: %s", self.name, message_id)
        return DeliveryResult(
            success=True,
            provider_message_id=message_id,
            status=DeliveryStatus.SENT,
            raw_status="sent",
        )

    def _failure_from_response(self, response: httpx.Response) -> DeliveryResult:
        error_code: Optional[str] = None
        message: Optional[str] = None
        try:
            error = response.json().get("error") or {}
            message = error.get("message")
            for detail in error.get("details") or []:
                if detail.get("errorCode"):
                    error_code = detail["errorCode"]
                    break
            error_code = error_code or error.get("status")
        except (ValueError, AttributeError):
            pass

        logger.warning(
            "[%s] Push rejected: HTTP %d %s %s", self.name, response.status_code, error_code, message,
        )
        if error_code in _PERMANENT_CODES:
            return DeliveryResult.failure(f"FCM_{error_code}", message or error_code, ErrorKind.PERMANENT)
        if error_code in _CONFIGURATION_CODES:
            return DeliveryResult.failure(f"FCM_{error_code}", message or error_code, ErrorKind.CONFIGURATION)
        return classify_http_failure(
            response,
            error_code=f"FCM_{error_code}" if error_code else None,
            error_message=message,
        )
