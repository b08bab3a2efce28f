"""
Structured logging configuration.

Three kinds of work log through the same root handler:

    endpoint request   context: request_id, client_ip, endpoint, method
    scheduler pass     context: pass_no
    orchestrator run   context: trigger_id (+ location_id per unit of work)

Each binds its fields with `log_context(...)` for the duration of the work;
both formatters read them back so a line can be traced to the request,
pass or trigger that produced it.

Usage:
    from weather_bridge.app.core.logging_config import log_context, setup_logging

    setup_logging(settings)
    with log_context(trigger_id="a1b2c3d4"):
        logger.info("Trigger started", extra={"location_id": 1})
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Iterator, Optional, TextIO

if TYPE_CHECKING:
    from weather_bridge.app.core.config import Settings

_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

# Record attributes passed through `extra=` that formatters surface
EXTRA_FIELDS = (
    "lat", "lon", "location_id", "failure_kind", "status_code",
    "duration_ms", "endpoint",
)

# Context keys shown as short tags by the pretty formatter, in order
PRETTY_TAGS = (
    ("request_id", "req"),
    ("pass_no", "pass"),
    ("trigger_id", "trg"),
)

NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


@contextmanager
def log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """Merge `fields` into the current log context until the block exits."""
    merged = {**_log_context.get(), **fields}
    token = _log_context.set(merged)
    try:
        yield merged
    finally:
        _log_context.reset(token)


def current_log_context() -> Dict[str, Any]:
    return _log_context.get()


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in EXTRA_FIELDS if hasattr(record, key)}


# ── JSON Formatter (Production) ──

class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        ctx = current_log_context()
        if ctx:
            entry["context"] = ctx
        entry.update(_extras(record))

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=str)


# ── Pretty Formatter (Development) ──

class PrettyFormatter(logging.Formatter):
    """Coloured console lines tagged with the active request, pass or trigger."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _tags(self, record: logging.LogRecord) -> str:
        ctx = current_log_context()
        tags = [f"{label}:{str(ctx[key])[:8]}" for key, label in PRETTY_TAGS if key in ctx]
        location_id = getattr(record, "location_id", None)
        if location_id is not None:
            tags.append(f"loc:{location_id}")
        return f" [{' '.join(tags)}]" if tags else ""

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:8s}"
        if self.use_color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        line = (
            f"{self.formatTime(record, '%H:%M:%S')} {level}"
            f"{self._tags(record)} {record.name}: {record.getMessage()}"
        )

        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


# ── Setup ──

def setup_logging(settings: "Settings", stream: Optional[TextIO] = None) -> logging.Handler:
    """JSON lines in production, pretty console otherwise. Replaces root handlers."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    stream = stream or sys.stdout
    handler = logging.StreamHandler(stream)
    if settings.is_production:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(PrettyFormatter(use_color=stream.isatty()))
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.DATABASE_ECHO else logging.WARNING
    )
    return handler
