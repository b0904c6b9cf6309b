"""Structured logging for the FDTS datastore.

All modules log through structlog on top of the stdlib ``logging`` module,
so datastore events (``connection_created``, ``transaction_failed``,
``migration_applied``, ...) end up in the same handlers as the host
application's records. Events are snake_case names with key/value context.

Usage:
    from fdts.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("backup_completed", target=str(path), size_bytes=size)
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from fdts.config import DatabaseSettings

# Shared by the console and JSON renderers
_PROCESSORS: list[structlog.types.Processor] = [
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    colors: bool = True,
) -> None:
    """Route structlog through stdlib logging on stderr.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render one JSON object per line instead of console text
        colors: Colorize console output (ignored for JSON)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper()),
        force=True,
    )

    renderer: structlog.types.Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer(default=str)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=colors)

    structlog.configure(
        processors=[*_PROCESSORS, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_from_settings(settings: DatabaseSettings, verbose: bool = False) -> None:
    """Apply ``LOG_LEVEL`` / ``LOG_JSON`` from the datastore settings.

    ``verbose`` forces DEBUG, which includes every SQL statement and its
    parameters.
    """
    configure_logging(
        level="DEBUG" if verbose else settings.log_level,
        json_output=settings.log_json,
        colors=not settings.log_json and sys.stderr.isatty(),
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, typically ``get_logger(__name__)``."""
    return structlog.get_logger(name)
