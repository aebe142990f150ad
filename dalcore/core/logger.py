"""Structured logging configuration with data context correlation."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

CONTEXT_FIELDS = ("context_id", "tenant_id", "entity", "isolation_level", "elapsed_ms")


class JSONFormatter(logging.Formatter):
    """Render log records as JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
            "context_id": getattr(record, "context_id", None),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        for key in CONTEXT_FIELDS:
            if key != "context_id" and hasattr(record, key):
                payload[key] = getattr(record, key)
        return json.dumps(payload, default=str)


class ContextIdFilter(logging.Filter):
    """Ensure a ``context_id`` attribute is always present on log records."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - trivial
        if not hasattr(record, "context_id"):
            record.context_id = None
        return True


def new_context_id() -> str:
    """Return a fresh correlation identifier for a data context."""
    return uuid4().hex


def configure_logging(level: str | int = "INFO") -> None:
    """Configure the root logger with JSON-formatted stdout output."""

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    handler.addFilter(ContextIdFilter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    level_value: int | str = level
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        level_value = resolved if isinstance(resolved, int) else level.upper()
    root.setLevel(level_value)


__all__ = ["configure_logging", "new_context_id", "JSONFormatter", "ContextIdFilter"]
