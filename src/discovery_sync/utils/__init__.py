"""Logging, tracing and metrics utilities."""

from discovery_sync.utils.logging import bind_context, clear_context, configure_logging, get_logger
from discovery_sync.utils.metrics import MetricsCollector
from discovery_sync.utils.tracing import (
    CORRELATION_ID_HEADER,
    REQUEST_ID_HEADER,
    TracingMiddleware,
    get_correlation_id,
)

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    "bind_context",
    "clear_context",
    # Metrics
    "MetricsCollector",
    # Tracing
    "TracingMiddleware",
    "get_correlation_id",
    "CORRELATION_ID_HEADER",
    "REQUEST_ID_HEADER",
]
