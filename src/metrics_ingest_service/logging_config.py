"""Structured logging setup."""
from __future__ import annotations

import logging
import sys

import structlog

from metrics_ingest_service.settings import settings


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structlog (and the stdlib root logger used by aiohttp)."""
    level_name = (level or settings.log_level).upper()
    log_level = logging.getLevelName(level_name)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    renderer: structlog.typing.Processor
    if (fmt or settings.log_format) == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
