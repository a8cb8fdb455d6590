"""Logging configuration using structlog.

Merge runs bind their session id (and output path) with ``log_context``;
every event logged inside that block, including from worker threads
started with ``asyncio.to_thread``, carries those keys.
"""

import logging
import sys
from contextlib import AbstractContextManager

import structlog
from structlog.contextvars import bound_contextvars, merge_contextvars


def setup_logging(log_level: str = "INFO") -> None:
    """Configure structured logging for the merge tool.

    Log lines go to stderr so that stdout stays free for the CLI's own
    output (the final output path).

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=level,
    )

    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer()
            if sys.stderr.isatty()
            else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def log_context(**values) -> AbstractContextManager:
    """Bind ``values`` to every log event emitted inside the ``with`` block.

    Explicit keyword arguments on a log call win over bound values.
    """
    return bound_contextvars(**values)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__ of the module).

    Returns:
        Configured structlog logger.
    """
    return structlog.get_logger(name)
