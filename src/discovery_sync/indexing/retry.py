"""Bounded exponential backoff with jitter for index operations."""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field

from discovery_sync.errors import OperationCancelledError, RetryExhaustedError, is_retryable
from discovery_sync.indexing.models import RetryAttempt, RetryHistory, utcnow
from discovery_sync.utils.logging import get_logger
from discovery_sync.utils.metrics import MetricsCollector

T = TypeVar("T")

logger = get_logger(__name__)


class RetryPolicy(BaseModel):
    """Backoff parameters.

    The delay after failed attempt ``n`` (0-indexed) is
    ``min(base_delay * backoff_factor**n * jitter, max_delay)`` with
    ``jitter`` drawn uniformly from ``[1 - jitter_ratio, 1 + jitter_ratio]``.
    """

    max_attempts: int = Field(default=3, ge=1, description="Total attempts, first one included")
    base_delay: float = Field(default=5.0, gt=0, description="Base delay in seconds")
    max_delay: float = Field(default=3600.0, gt=0, description="Delay ceiling in seconds")
    backoff_factor: float = Field(default=2.0, ge=1.0, description="Exponential multiplier")
    jitter_ratio: float = Field(default=0.2, ge=0.0, lt=1.0, description="Jitter spread")


class RetryEngine:
    """Runs an async operation until it succeeds, fails fatally, or exhausts its attempts.

    Waiting between attempts suspends only the calling task, so a message
    being retried never holds up other partitions. Retryable failures are
    decided by ``errors.is_retryable``; anything else is re-raised at once.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        metrics: MetricsCollector | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.metrics = metrics
        self._sleep = sleep
        self._rng = rng or random.Random()

    def compute_delay(self, attempt: int) -> float:
        """Backoff delay in seconds after failed attempt ``attempt`` (0-indexed)."""
        p = self.policy
        jitter = self._rng.uniform(1.0 - p.jitter_ratio, 1.0 + p.jitter_ratio)
        try:
            raw = p.base_delay * (p.backoff_factor**attempt) * jitter
        except OverflowError:
            return p.max_delay
        return min(raw, p.max_delay)

    async def run(
        self,
        func: Callable[[], Awaitable[T]],
        *,
        operation: str = "",
        operation_id: str = "",
        entity: str = "category",
        deadline: float | None = None,
        on_retry: Callable[[int, BaseException, float], None] | None = None,
    ) -> T:
        """Run ``func`` with retries.

        Args:
            func: Zero-argument coroutine factory performing one attempt.
            operation: Operation name for logs and metrics.
            operation_id: Identifier the retry history is kept under.
            entity: Entity type for error context.
            deadline: Absolute event-loop time (``loop.time()``) after which no
                attempt is started and in-flight attempts are aborted.
            on_retry: Called with the 0-indexed failed attempt, its error and the
                backoff delay before each wait.

        Returns:
            The result of the first successful attempt.

        Raises:
            RetryExhaustedError: Every attempt failed with a retryable error.
            OperationCancelledError: The deadline passed before a terminal outcome.
            SyncError: A non-retryable error from an attempt, unchanged.
        """
        loop = asyncio.get_running_loop()
        history = RetryHistory(operation_id=operation_id)

        for attempt in range(self.policy.max_attempts):
            if deadline is not None and loop.time() >= deadline:
                self._record(operation, "cancelled")
                raise OperationCancelledError(
                    f"Deadline passed before attempt {attempt + 1}",
                    operation=operation,
                    entity=entity,
                )

            started_at = utcnow()
            start = time.perf_counter()
            try:
                result = await self._attempt(func, deadline, operation, entity)
            except OperationCancelledError:
                self._record(operation, "cancelled")
                raise
            except Exception as e:
                duration = time.perf_counter() - start
                if not is_retryable(e):
                    history.add(RetryAttempt(attempt, started_at, duration, error=e))
                    self._record(operation, "fatal")
                    raise

                is_last = attempt + 1 >= self.policy.max_attempts
                delay = None if is_last else self.compute_delay(attempt)
                history.add(RetryAttempt(attempt, started_at, duration, error=e, next_delay=delay))
                logger.warning(
                    "retry_attempt_failed",
                    operation=operation,
                    operation_id=operation_id,
                    attempt=attempt + 1,
                    max_attempts=self.policy.max_attempts,
                    duration_ms=round(duration * 1000, 2),
                    next_delay_s=round(delay, 3) if delay is not None else None,
                    error=str(e),
                )
                if is_last:
                    break

                self._record(operation, "retry")
                if on_retry is not None:
                    on_retry(attempt, e, delay)
                if deadline is not None and loop.time() + delay >= deadline:
                    self._record(operation, "cancelled")
                    raise OperationCancelledError(
                        "Deadline passes before the next attempt",
                        operation=operation,
                        entity=entity,
                        cause=e,
                    ) from e
                await self._sleep(delay)
                continue

            duration = time.perf_counter() - start
            history.add(RetryAttempt(attempt, started_at, duration))
            if attempt > 0:
                self._record(operation, "success")
                logger.info(
                    "retry_succeeded",
                    operation=operation,
                    operation_id=operation_id,
                    attempts=history.count,
                )
            return result

        self._record(operation, "exhausted")
        logger.error(
            "retry_exhausted",
            operation=operation,
            operation_id=operation_id,
            attempts=history.count,
            total_delay_s=round(history.total_delay, 3),
            history=history.summary(),
        )
        raise RetryExhaustedError(
            f"Operation failed after {history.count} attempts",
            last_error=history.last_error,
            attempts=history.count,
            operation=operation,
            entity=entity,
        )

    @staticmethod
    async def _attempt(
        func: Callable[[], Awaitable[T]],
        deadline: float | None,
        operation: str,
        entity: str,
    ) -> T:
        if deadline is None:
            return await func()
        try:
            async with asyncio.timeout_at(deadline) as cm:
                return await func()
        except TimeoutError as e:
            if not cm.expired():
                raise
            raise OperationCancelledError(
                "Deadline passed during attempt", operation=operation, entity=entity, cause=e
            ) from e

    def _record(self, operation: str, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_retry(operation, outcome)
