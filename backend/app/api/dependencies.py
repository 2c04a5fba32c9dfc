"""
Request-scoped dependencies shared by the v1 routers.

The engine is created in the application lifespan and kept on
``app.state``; routes receive it through ``Depends(get_engine)`` so tests
can swap in an engine built around mock providers.
"""

from __future__ import annotations

from fastapi import Request

from backend.app.core.errors import DeliveryEngineError
from backend.app.delivery.engine import NotificationEngine


def get_engine(request: Request) -> NotificationEngine:
    """Get the NotificationEngine from app state."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise DeliveryEngineError(
            "Notification engine is not initialised",
            status_code=503,
            error_code="ENGINE_UNAVAILABLE",
        )
    return engine
