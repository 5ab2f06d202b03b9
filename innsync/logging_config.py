"""Structured logging setup.

Configures structlog for application logs and quiets chatty third-party
loggers on the standard library root logger.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable, MutableMapping
from typing import Any, cast

import structlog

from innsync.config import settings

# Type alias for structlog processor
Processor = Callable[[Any, str, MutableMapping[str, Any]], Any]


def setup_logging(level: str | None = None) -> None:
    """Configure structured logging globally using structlog.

    At INFO and above logs are rendered as JSON for aggregation; at DEBUG a
    human-readable console renderer is used.

    Args:
        level: Log level name (defaults to settings.LOG_LEVEL).
    """
    log_level = (level or settings.LOG_LEVEL).upper()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    # Outbound delivery clients are chatty at INFO
    for noisy_logger in ["httpx", "httpcore", "uvicorn.access"]:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    renderer: Processor = cast(
        Processor,
        (
            structlog.dev.ConsoleRenderer(colors=True)
            if log_level == "DEBUG"
            else structlog.processors.JSONRenderer()
        ),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
