"""Structured logging helpers shared by the backend."""

from __future__ import annotations

import json
import logging
import sys
import threading
from datetime import datetime, timezone
from typing import Any

__all__ = ["JsonLineFormatter", "configure_logging", "get_logger", "reset_logging"]

LOGGER_NAMESPACE = "clockout"

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}

_configured = False
_lock = threading.Lock()


class JsonLineFormatter(logging.Formatter):
    """Render each record as one JSON object including ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = value
        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            payload["exc_type"] = type(exc).__name__
            payload["exc_message"] = str(exc)
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def get_logger(name: str) -> logging.Logger:
    """Return a logger nested under the ``clockout`` namespace."""

    if name.startswith("backend.app."):
        name = name[len("backend.app.") :]
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


def configure_logging(
    settings: dict[str, Any] | None = None,
    *,
    handler: logging.Handler | None = None,
) -> None:
    """Attach a handler to the namespace logger (idempotent)."""

    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    settings = settings or {}
    level_name = str(settings.get("level", "INFO")).upper()
    root_logger = logging.getLogger(LOGGER_NAMESPACE)
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))
    root_logger.propagate = False

    target = handler or logging.StreamHandler(sys.stderr)
    if settings.get("json", True):
        target.setFormatter(JsonLineFormatter())
    else:
        target.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
    root_logger.addHandler(target)


def reset_logging() -> None:
    """Drop configured handlers; used by tests."""

    global _configured
    with _lock:
        _configured = False
    root_logger = logging.getLogger(LOGGER_NAMESPACE)
    root_logger.handlers.clear()
    root_logger.setLevel(logging.WARNING)
    root_logger.propagate = True
