"""
Error types raised to single-item callers, and their HTTP rendering.

Bulk and background delivery never raise: a failed channel comes back as a
DeliveryOutcome carrying an ``error_kind``.  The classes below exist for
``send_now``, lookups and the routers.

    ┌──────────────────────────┬────────┬──────────────────────────────┐
    │ Class                    │ Status │ error_code                   │
    ├──────────────────────────┼────────┼──────────────────────────────┤
    │ NotFoundError            │  404   │ NOT_FOUND                    │
    │ ValidationError          │  422   │ VALIDATION_ERROR             │
    │ TransientProviderError   │  503   │ TRANSIENT_PROVIDER_ERROR     │
    │ PermanentProviderError   │  502   │ PERMANENT_PROVIDER_ERROR     │
    │ ConfigurationError       │  503   │ CONFIGURATION_ERROR          │
    └──────────────────────────┴────────┴──────────────────────────────┘

Every response body has the shape::

    {"error": {"code": ..., "message": ..., "status": ..., "details": {...}}}

Outside production the request path and method are added to the body.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


class DeliveryEngineError(Exception):
    """Root of the engine's error tree; carries its own HTTP mapping."""

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
            "status": self.status_code,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(DeliveryEngineError):
    """Unknown notification, attempt or provider."""

    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource: str, **identifiers: Any):
        super().__init__(
            f"{resource} not found",
            details={"resource": resource, **identifiers},
        )


class ValidationError(DeliveryEngineError):
    """Bad recipient or oversize content. Retrying cannot help."""

    status_code = 422
    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class _ProviderError(DeliveryEngineError):
    """A failure attributed to one named provider."""

    summary = "failed"

    def __init__(self, provider: str, message: str = "", **details: Any):
        self.provider = provider
        super().__init__(
            f"Provider '{provider}' {self.summary}: {message}",
            details={"provider": provider, **details},
        )


class TransientProviderError(_ProviderError):
    """Timeout, 5xx or rate limiting; the same request may succeed later."""

    status_code = 503
    error_code = "TRANSIENT_PROVIDER_ERROR"
    retryable = True
    summary = "temporarily failed"


class PermanentProviderError(_ProviderError):
    """The provider refused this message outright."""

    status_code = 502
    error_code = "PERMANENT_PROVIDER_ERROR"
    summary = "rejected delivery"


class ConfigurationError(_ProviderError):
    """Missing credentials, or the provider was switched off after an outage."""

    status_code = 503
    error_code = "CONFIGURATION_ERROR"
    summary = "is not available"


# ── Rendering ──

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    error: Dict[str, Any] = {"code": error_code, "message": message, "status": status_code}
    if details:
        error["details"] = details
    if request is not None and not settings.is_production:
        error.update(path=request.url.path, method=request.method)
    return JSONResponse(status_code=status_code, content={"error": error})


def _render(exc: DeliveryEngineError, request: Request) -> JSONResponse:
    body = exc.to_dict()
    return _build_error_response(
        body["status"], body["code"], body["message"], body.get("details"), request,
    )


def register_error_handlers(app: FastAPI) -> None:
    """Attach the engine, ValueError and catch-all handlers to ``app``."""

    @app.exception_handler(DeliveryEngineError)
    async def on_engine_error(request: Request, exc: DeliveryEngineError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            level, "%s %s -> %s: %s",
            request.method, request.url.path, exc.error_code, exc.message,
            extra={"status_code": exc.status_code},
        )
        return _render(exc, request)

    @app.exception_handler(ValueError)
    async def on_value_error(request: Request, exc: ValueError):
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc)
        return _render(ValidationError(str(exc)), request)

    @app.exception_handler(Exception)
    async def on_unexpected(request: Request, exc: Exception):
        trace = traceback.format_exc()
        logger.critical("Unhandled %s on %s\n%s", type(exc).__name__, request.url.path, trace)
        if settings.DEBUG:
            failure = DeliveryEngineError(str(exc), details={"traceback": trace.splitlines()})
        else:
            failure = DeliveryEngineError("Internal server error")
        return _render(failure, request)
