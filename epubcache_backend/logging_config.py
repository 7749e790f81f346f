"""structlog setup shared by the server and the backend modules."""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from .config import Settings


def configure_logging(settings: Settings) -> None:
    """Install structlog processors for the configured level and format.

    Safe to call more than once (the app factory runs once per app instance).
    """
    level = logging.getLevelName(settings.log_level)
    renderer: structlog.types.Processor
    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def redact(secret: str | None, keep: int = 10) -> str:
    """Return a short prefix of a token, enough to correlate log lines."""
    if not secret:
        return "null"
    return secret[: min(keep, len(secret))] + "..."
