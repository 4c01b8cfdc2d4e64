"""Structured logging setup.

Uses structlog for structured JSON logging in production and
human-readable console output in development. Events are routed through
the stdlib root logger, whose level comes from ``LOG_LEVEL``.
"""

from __future__ import annotations

import logging

import structlog

from src.carsearch.config import Environment, Settings


def resolve_log_level(name: str) -> int:
    """Map a LOG_LEVEL name to a stdlib level, INFO when unrecognised."""
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_structlog(settings: Settings) -> None:
    """Configure structlog processors and the root level from settings."""
    level = resolve_log_level(settings.LOG_LEVEL)
    logging.basicConfig(format="%(message)s")
    # basicConfig leaves an already-configured root logger alone
    logging.getLogger().setLevel(level)

    processors: list = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    if settings.ENVIRONMENT == Environment.production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
