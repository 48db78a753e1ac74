"""Structured logging configuration using structlog."""

import logging
import sys
from typing import Any

import structlog
from structlog.contextvars import (
    bind_contextvars,
    clear_contextvars,
    merge_contextvars,
    unbind_contextvars,
)

# Keys bound for the lifetime of one consumed change message
MESSAGE_CONTEXT_KEYS = ("topic", "partition", "offset")


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    add_timestamps: bool = True,
) -> None:
    """Configure structured logging for the sync service.

    Client wrappers keep logging through the standard library; structlog
    sits on top of it so both streams share the same renderer.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        json_format: Render JSON lines (True) or the console renderer (False).
        add_timestamps: Stamp each entry with an ISO-8601 UTC timestamp.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )
    # aiokafka and elastic_transport are chatty at INFO
    for noisy in ("aiokafka", "elastic_transport"):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))

    processors: list[Any] = [
        merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if add_timestamps:
        processors.insert(1, structlog.processors.TimeStamper(fmt="iso", utc=True))

    if json_format:
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger instance.

    Args:
        name: Logger name, usually the calling module's ``__name__``.

    Returns:
        A structlog BoundLogger.
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind key-value pairs to every log entry in the current async context.

    Example:
        >>> bind_context(topic="postgres.digital_discovery.public.categories", partition=0)
        >>> logger.info("message_received")
    """
    bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove previously bound keys from the current async context."""
    unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all context variables.

    Called at the start of each HTTP request so context bound by one
    request never leaks into the next.
    """
    clear_contextvars()
