"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import os
import sys
from contextlib import AbstractContextManager

import structlog

QUIET_LOGGERS = ("aiosqlite", "apscheduler", "aiohttp.access")


def _json_logs() -> bool:
    return os.environ.get("JSON_LOGS", "").strip().lower() in ("1", "true", "yes")


def setup_logging(log_level: str = "INFO") -> None:
    """Configure structlog. Set JSON_LOGS=1 for JSON output, default is console."""
    renderer = (
        structlog.processors.JSONRenderer()
        if _json_logs()
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def trace_context(trace_id: str, **extra) -> AbstractContextManager:
    """Bind trace_id (and any extra fields) to every event logged inside the block."""
    return structlog.contextvars.bound_contextvars(trace_id=trace_id, **extra)
