"""Logging setup for the fleet service.

Loggers live under the ``mirror_fleet`` namespace. Request-scoped fields
(trace id, request source) are kept in ContextVars set by the HTTP middleware
and attached to every record.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

trace_id_ctx: ContextVar[str | None] = ContextVar("trace_id", default=None)
request_source_ctx: ContextVar[str | None] = ContextVar("request_source", default=None)

_LOGGER_PREFIX = "mirror_fleet"

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName", "trace_id", "request_source"}


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = trace_id_ctx.get() or "-"
        record.request_source = request_source_ctx.get() or "-"
        return True


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "trace_id": getattr(record, "trace_id", None),
            "request_source": getattr(record, "request_source", None),
        }
        for key, val in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = val
        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            payload["exc_type"] = type(exc).__name__
            payload["exc_message"] = str(exc)
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the mirror_fleet namespace."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    root = logging.getLogger(_LOGGER_PREFIX)
    root.setLevel(level)
    # configure once; uvicorn reloads and TestClient startups call this repeatedly
    if any(getattr(h, "_mirror_fleet", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler._mirror_fleet = True  # type: ignore[attr-defined]
    handler.addFilter(RequestContextFilter())
    if json_output:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(trace_id)s] %(message)s")
        )
    root.addHandler(handler)
