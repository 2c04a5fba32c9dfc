"""
Request middleware — correlation IDs, timing and request logs.

Provides:
    • X-Request-ID header (taken from the caller or generated)
    • X-Process-Time header
    • One log entry per request (webhook and probe traffic at DEBUG)
    • Request context (request_id, endpoint, notification_id when the
      path names one) for downstream log records
"""

from __future__ import annotations

import logging
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

_NOTIFICATION_PATH_RE = re.compile(r"^/api/v1/notifications/([^/]+)")
_QUIET_PREFIXES = ("/health", "/api/v1/webhooks")
_SKIPPED_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with timing and inject a correlation ID."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        path = request.url.path

        context = {"request_id": request_id, "endpoint": path, "method": request.method}
        match = _NOTIFICATION_PATH_RE.match(path)
        if match and match.group(1) != "bulk":
            context["notification_id"] = match.group(1)
        set_request_context(**context)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "%s %s → 500 (%.1fms)",
                request.method, path, (time.perf_counter() - start) * 1000,
                extra={"status_code": 500, "endpoint": path},
            )
            set_request_context()
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        if not path.startswith(_SKIPPED_PREFIXES):
            if response.status_code >= 400:
                level = logging.WARNING
            elif path.startswith(_QUIET_PREFIXES):
                level = logging.DEBUG
            else:
                level = logging.INFO
            logger.log(
                level,
                "%s %s → %d (%.1fms)",
                request.method, path, response.status_code, duration_ms,
                extra={
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                    "endpoint": path,
                },
            )
        set_request_context()
        return response
