"""Structured logging configuration with structlog."""

from __future__ import annotations

import logging
import sys

import structlog
from structlog.typing import Processor

DEFAULT_LOG_LEVEL = "INFO"


def _level(name: str) -> int:
    return getattr(logging, (name or DEFAULT_LOG_LEVEL).upper(), logging.INFO)


def configure_logging(level: str = DEFAULT_LOG_LEVEL, fmt: str = "console") -> None:
    """Configure structlog once at startup.

    ``fmt`` is ``"json"`` for machine-readable output, anything else for
    the console renderer.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_level(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
