"""Structured logging for workers, the CLI and the API.

Every module logs through ``logging.getLogger(__name__)`` below the
``eventimport`` logger. ``setup_logging`` installs one stream handler there;
``with_context`` wraps a logger so job, stage and batch identifiers travel
with each record.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "eventimport"

# Order is the rendering order in text logs.
CONTEXT_FIELDS = ("job_id", "stage", "batch", "provider", "task", "from_stage", "to_stage", "actor")


def _record_context(record: logging.LogRecord) -> dict[str, Any]:
    ctx = {}
    for name in CONTEXT_FIELDS:
        value = getattr(record, name, None)
        if value is not None and value != "":
            ctx[name] = value
    return ctx


# ---------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(self, include_context: bool = True):
        super().__init__()
        self.include_context = include_context

    def format(self, record: logging.LogRecord) -> str:
        doc: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if self.include_context:
            doc.update(_record_context(record))
        if record.exc_info:
            doc["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(doc, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """``LEVEL logger [k=v ...] message``"""

    def __init__(self, include_context: bool = True):
        super().__init__()
        self.include_context = include_context

    def format(self, record: logging.LogRecord) -> str:
        head = f"{record.levelname} {record.name}"
        ctx = _record_context(record) if self.include_context else {}
        if ctx:
            head += " [" + " ".join(f"{k}={v}" for k, v in ctx.items()) + "]"
        line = f"{head} {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


# ---------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class LoggingOptions:
    level: str = "INFO"
    json_logs: bool = False
    include_context: bool = True
    stream: Any = None


def setup_logging(options: LoggingOptions | None = None) -> logging.Logger:
    """Configure the package logger; calling it again swaps the handler."""
    options = options or LoggingOptions()
    level = logging.getLevelName(options.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)

    formatter_cls = JsonFormatter if options.json_logs else TextFormatter
    handler = logging.StreamHandler(options.stream or sys.stdout)
    handler.setFormatter(formatter_cls(include_context=options.include_context))
    logger.addHandler(handler)
    return logger


# ---------------------------------------------------------------------
# Context injection
# ---------------------------------------------------------------------


class ContextAdapter(logging.LoggerAdapter):
    """Merge the adapter's fields under any per-call ``extra``."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def with_context(logger: logging.Logger, **fields: Any) -> ContextAdapter:
    """
    Wrap ``logger`` so every record carries the given context fields.

    Unset fields (None or empty) are dropped; ``batch=0`` is kept.
    """
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise TypeError(f"unknown log context field(s): {', '.join(sorted(unknown))}")
    extra = {k: v for k, v in fields.items() if v is not None and v != ""}
    return ContextAdapter(logger, extra)
