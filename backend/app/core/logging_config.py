"""
Logging setup for the delivery engine.

Two renderings of the same records:

    production   one JSON object per line, for the log shipper
    otherwise    coloured single-line output for a terminal

Request middleware stores ``request_id`` / ``client_ip`` / ``endpoint`` in
a context variable; a filter copies it onto every record emitted while the
request is in flight.  Delivery code passes identifiers through ``extra=``:

    logger.info(
        "Attempt %d on %s failed",
        attempt.attempt_number, channel.value,
        extra={"notification_id": n.id, "channel": channel.value},
    )

Only the names in ``_EXTRA_FIELDS`` are promoted into the JSON object.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict

from backend.app.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar("request_context", default={})

_EXTRA_FIELDS = (
    "notification_id",
    "attempt_id",
    "attempt_number",
    "channel",
    "provider",
    "provider_message_id",
    "delivery_status",
    "error_kind",
    "batch_size",
    "duration_ms",
    "status_code",
    "endpoint",
)

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def set_request_context(**kwargs: Any) -> None:
    """Replace the context attached to records for the current task."""
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


class _RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_context = dict(get_request_context())
        return True


def _exception_summary(record: logging.LogRecord):
    if not record.exc_info or record.exc_info[1] is None:
        return None
    exc = record.exc_info[1]
    return type(exc).__name__, str(exc)


class JSONFormatter(logging.Formatter):
    """One JSON document per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        context = getattr(record, "request_context", None) or get_request_context()
        if context:
            entry["context"] = context
        entry.update(
            (name, getattr(record, name))
            for name in _EXTRA_FIELDS
            if hasattr(record, name)
        )
        failure = _exception_summary(record)
        if failure:
            entry["exception"] = {"type": failure[0], "message": failure[1]}
        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Terminal output: time, level, short request id, notification tag."""

    LEVEL_COLOURS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.LEVEL_COLOURS.get(record.levelno, "")
        parts = [f"{colour}{self.formatTime(record, '%H:%M:%S')} {record.levelname:<8}{self.RESET}"]

        context = getattr(record, "request_context", None) or get_request_context()
        request_id = context.get("request_id")
        if request_id:
            parts.append(f"[{request_id[:8]}]")
        notification_id = getattr(record, "notification_id", None)
        if notification_id:
            parts.append(f"<{notification_id}>")
        parts.append(f"{record.name}: {record.getMessage()}")

        line = " ".join(parts)
        failure = _exception_summary(record)
        if failure:
            line += f"\n  {failure[0]}: {failure[1]}"
        return line


def setup_logging() -> None:
    """Install a single stdout handler on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(_RequestContextFilter())
    handler.setFormatter(JSONFormatter() if settings.is_production else PrettyFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
