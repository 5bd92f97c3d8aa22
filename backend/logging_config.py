"""
Logging setup for the enrollment API.

structlog is configured once at startup; modules bind their own logger with
``get_logger(__name__)`` and emit snake_case events with key/value context.
"""
from __future__ import annotations

import logging
import sys
from typing import Any, List, Optional

import structlog


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    extra_processors: Optional[List[Any]] = None,
) -> None:
    """
    Configure structlog on top of the standard library logger.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR)
        json_output: Render JSON lines instead of the console renderer
        extra_processors: Additional processors run before rendering
    """
    log_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        stream=sys.stdout,
        format="%(message)s",
    )

    processors: List[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if extra_processors:
        processors.extend(extra_processors)

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)
