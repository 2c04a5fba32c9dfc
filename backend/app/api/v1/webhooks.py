"""
FastAPI route: provider status callbacks.

    POST /api/v1/webhooks/{provider}

Twilio posts ``application/x-www-form-urlencoded``; SendGrid posts a JSON
array; the in-app sink and generic callers post JSON objects.  Form
bodies are decoded with ``urllib.parse`` so the route needs no multipart
parser.
"""

from __future__ import annotations

from typing import Any, Dict
from urllib.parse import parse_qs

from fastapi import APIRouter, Depends, Request

from backend.app.api.dependencies import get_engine
from backend.app.core.errors import ValidationError
from backend.app.delivery.engine import NotificationEngine

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


async def _read_payload(request: Request) -> Any:
    content_type = request.headers.get("content-type", "")
    raw = await request.body()
    if content_type.startswith("application/x-www-form-urlencoded"):
        fields = parse_qs(raw.decode("utf-8"), keep_blank_values=True)
        return {key: values[-1] for key, values in fields.items()}
    if not raw:
        raise ValidationError("Webhook body is empty", field="body")
    try:
        return await request.json()
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON", field="body") from None


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    engine: NotificationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    payload = await _read_payload(request)
    summary = await engine.handle_webhook(provider, payload)
    return summary.to_dict()
