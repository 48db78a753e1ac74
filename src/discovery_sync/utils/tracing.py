"""Request tracing with correlation IDs."""

import time
import uuid
from contextvars import ContextVar
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from discovery_sync.utils.logging import bind_context, clear_context, get_logger

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"
REQUEST_ID_HEADER = "X-Request-ID"

# Polled by orchestrators and scrapers; logged at debug only
QUIET_PATHS = frozenset({"/health", "/ready", "/metrics"})

logger = get_logger(__name__)


def get_correlation_id() -> str:
    """Correlation ID of the current request, or an empty string outside one."""
    return correlation_id_var.get()


class TracingMiddleware(BaseHTTPMiddleware):
    """Binds a correlation ID to each request's log context.

    The ID is taken from ``X-Correlation-ID`` or ``X-Request-ID`` when the
    caller sends one, generated otherwise, and echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next: Any) -> Any:
        clear_context()

        correlation_id = (
            request.headers.get(CORRELATION_ID_HEADER)
            or request.headers.get(REQUEST_ID_HEADER)
            or str(uuid.uuid4())
        )
        correlation_id_var.set(correlation_id)
        bind_context(
            correlation_id=correlation_id,
            method=request.method,
            path=request.url.path,
        )

        log = logger.debug if request.url.path in QUIET_PATHS else logger.info
        start = time.perf_counter()
        log("request_started")

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
                exc_info=True,
            )
            raise

        log(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response
