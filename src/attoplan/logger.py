"""Structured logging using structlog."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


def setup_logging(*, debug: bool = False, json_output: bool = False) -> None:
    """Configure stdlib logging and structlog for the process.

    Library modules log through ``logging.getLogger(__name__)``; the CLI
    talks through :func:`get_logger`. Both end up on stderr.

    Args:
        debug: Enable DEBUG level logging.
        json_output: Render one JSON object per line instead of console text.
    """
    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        level=level,
    )

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
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


def get_logger(name: str = "attoplan", **kwargs: Any) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, optionally bound to initial context."""
    logger = structlog.get_logger(name)
    if kwargs:
        logger = logger.bind(**kwargs)
    return logger
