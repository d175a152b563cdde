"""
Structured logging for agent-keeper.

Every log line is a single JSON object with a dotted event name and flat
key/value fields, e.g.

    {"ts": "...", "level": "info", "logger": "sync", "event": "sync.complete",
     "sandbox_id": "main", "duration_ms": 812, "outcome": "success"}

Loggers are created with bound context (``get_logger("sync", sandbox_id=...)``)
and called with an event name plus fields (``log.info("sync.start", force=True)``).
Passing ``exc=`` expands the exception into ``error_type`` / ``error_message``.
"""

import json
import logging
import os
import sys
import time
from typing import Any

_CONFIGURED = False

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class JsonFormatter(logging.Formatter):
    """Render records produced by StructuredLogger as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
            + f".{int(record.msecs):03d}Z",
            "level": record.levelname.lower(),
            "logger": record.name.removeprefix("agent_keeper."),
            "event": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if fields:
            payload.update(fields)
        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None) -> None:
    """Install the JSON formatter on the root handler. Safe to call repeatedly."""
    global _CONFIGURED
    if _CONFIGURED:
        return

    level_name = (level or os.environ.get("LOG_LEVEL", "info")).lower()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger("agent_keeper")
    root.handlers = [handler]
    root.setLevel(LEVELS.get(level_name, logging.INFO))
    root.propagate = False
    _CONFIGURED = True


class StructuredLogger:
    """Thin wrapper binding context fields to a stdlib logger."""

    def __init__(self, name: str, context: dict[str, Any]):
        self._logger = logging.getLogger(f"agent_keeper.{name}")
        self.context = context

    def bind(self, **context: Any) -> "StructuredLogger":
        return StructuredLogger(
            self._logger.name.removeprefix("agent_keeper."), {**self.context, **context}
        )

    def _emit(self, level: int, event: str, fields: dict[str, Any]) -> None:
        if not self._logger.isEnabledFor(level):
            return
        exc = fields.pop("exc", None)
        if exc is not None:
            fields["error_type"] = type(exc).__name__
            fields["error_message"] = str(exc)
        merged = {**self.context, **{k: v for k, v in fields.items() if v is not None}}
        self._logger.log(level, event, extra={"fields": merged})

    def debug(self, event: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, event, fields)

    def info(self, event: str, **fields: Any) -> None:
        self._emit(logging.INFO, event, fields)

    def warn(self, event: str, **fields: Any) -> None:
        self._emit(logging.WARNING, event, fields)

    def error(self, event: str, **fields: Any) -> None:
        self._emit(logging.ERROR, event, fields)


def get_logger(name: str, **context: Any) -> StructuredLogger:
    """Return a structured logger with the given bound context."""
    return StructuredLogger(name, context)
