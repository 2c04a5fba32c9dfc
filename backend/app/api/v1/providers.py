"""
FastAPI route: provider operations and the in-app inbox.

    GET  /api/v1/providers                        — availability, outage switch, balance
    POST /api/v1/providers/{name}/enable          — operator re-enable after an outage
    GET  /api/v1/providers/in_app/inbox/{user}    — a user's in-app messages
    POST /api/v1/providers/in_app/messages/{id}/read — mark read (feeds reconciliation)
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from backend.app.api.dependencies import get_engine
from backend.app.core.errors import NotFoundError
from backend.app.delivery.engine import NotificationEngine
from backend.app.delivery.providers.in_app import InAppProvider

router = APIRouter(prefix="/api/v1/providers", tags=["providers"])


def _in_app(engine: NotificationEngine) -> InAppProvider:
    provider = engine.registry.get("in_app")
    if not isinstance(provider, InAppProvider):
        raise NotFoundError("provider", name="in_app")
    return provider


@router.get("")
async def list_providers(
    include_balance: bool = Query(True, description="Query each provider's account balance"),
    engine: NotificationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    providers = await engine.provider_status(include_balance)
    return {"count": len(providers), "providers": providers}


@router.post("/{name}/enable")
async def enable_provider(
    name: str,
    engine: NotificationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    if engine.registry.get(name) is None:
        raise NotFoundError("provider", name=name)
    was_disabled = engine.registry.enable(name)
    return {"provider": name, "enabled": True, "was_disabled": was_disabled}


@router.get("/in_app/inbox/{user_id}")
async def get_inbox(
    user_id: str,
    unread_only: bool = Query(False),
    engine: NotificationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    messages = _in_app(engine).inbox(user_id, unread_only)
    return {"user_id": user_id, "count": len(messages), "messages": [m.to_dict() for m in messages]}


@router.post("/in_app/messages/{message_id}/read")
async def mark_read(
    message_id: str,
    engine: NotificationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    callback = _in_app(engine).mark_read(message_id)
    if callback is None:
        raise NotFoundError("message", id=message_id)
    applied = await engine.reconciler.apply_callback(
        "in_app", callback.provider_message_id, callback.raw_status,
        callback.occurred_at, callback.payload,
    )
    return {"message_id": message_id, "read": True, "status_updated": bool(applied)}
