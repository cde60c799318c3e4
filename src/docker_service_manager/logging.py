"""Centralised logging configuration with JSON output."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

DEFAULT_LOG_LEVEL = "WARNING"


def _configure_structlog(level: int) -> None:
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def configure_logging(level: str = DEFAULT_LOG_LEVEL) -> None:
    """Initialise stdlib + structlog JSON logging on stderr.

    Output goes to stderr so it never interleaves with the CLI tables on stdout.
    """

    numeric = getattr(logging, level.upper(), logging.WARNING)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=numeric,
        force=True,
    )
    _configure_structlog(numeric)


def get_logger(name: str, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """Return a bound structured logger."""

    logger = structlog.get_logger(name)
    if initial_values:
        return logger.bind(**initial_values)
    return logger


__all__ = ["configure_logging", "get_logger"]
