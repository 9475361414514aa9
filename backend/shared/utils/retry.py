"""
Retry with exponential backoff and jitter.

    delay_ms = min(base_delay_ms * 2 ** (attempt - 1) * (1 + jitter), max_delay_ms)
    jitter   ~ U[0, 1)

The backoff sleep is awaited, so other tasks on the loop keep running while a
poller waits for its next attempt.
"""
from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from shared.config import Settings
from shared.models.domain import RetryContext
from shared.utils.logging import get_logger
from shared.utils.metrics import RETRY_ATTEMPTS

logger = get_logger(__name__)

T = TypeVar("T")

Operation = Callable[[int], Awaitable[T]]
ShouldRetry = Callable[[BaseException], bool]
OnRetry = Callable[[BaseException, int, float], Any]


def _always_retry(exc: BaseException) -> bool:
    return True


def _log_retry(exc: BaseException, attempt: int, delay_ms: float) -> None:
    logger.warning(
        "retry_scheduled",
        attempt=attempt,
        delay_ms=round(delay_ms, 1),
        error=str(exc),
        error_type=type(exc).__name__,
    )


class RetryExecutor:
    """
    Runs an async operation with bounded attempts.

    Args:
        max_attempts: Total attempts, first one included.
        base_delay_ms: Delay before the second attempt, before jitter.
        max_delay_ms: Cap applied after jitter.
        sleep: Awaitable sleep taking seconds; injectable for tests.
        rng: Random source for jitter.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_ms: float = 1000.0,
        max_delay_ms: float = 10000.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self._sleep = sleep
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "RetryExecutor":
        params: dict[str, Any] = {
            "max_attempts": settings.retry_max_attempts,
            "base_delay_ms": settings.retry_base_delay_ms,
            "max_delay_ms": settings.retry_max_delay_ms,
        }
        params.update(kwargs)
        return cls(**params)

    def compute_delay(self, attempt: int) -> float:
        """Backoff in milliseconds to wait after failed attempt ``attempt`` (1-indexed)."""
        delay = self.base_delay_ms * (2 ** (attempt - 1))
        delay *= 1 + self._rng.random()
        return min(delay, self.max_delay_ms)

    async def execute(
        self,
        operation: Operation[T],
        should_retry: Optional[ShouldRetry] = None,
        on_retry: Optional[OnRetry] = None,
    ) -> T:
        """
        Await ``operation(attempt)`` until it succeeds or retrying stops.

        The operation decides success or failure of each attempt by returning
        or raising. A non-retryable error is raised on the attempt it occurs;
        once ``max_attempts`` is reached the error of the last attempt is
        raised unchanged.
        """
        should_retry = should_retry or _always_retry
        on_retry = on_retry or _log_retry
        ctx = RetryContext(attempt=1, max_attempts=self.max_attempts)

        while True:
            try:
                return await operation(ctx.attempt)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                ctx.last_error = exc
                if ctx.attempt >= ctx.max_attempts:
                    RETRY_ATTEMPTS.labels(outcome="exhausted").inc()
                    if ctx.max_attempts > 1:
                        logger.error(
                            "retry_exhausted",
                            attempts=ctx.attempt,
                            error=str(exc),
                            error_type=type(exc).__name__,
                        )
                    raise
                if not should_retry(exc):
                    RETRY_ATTEMPTS.labels(outcome="not_retryable").inc()
                    raise

                delay_ms = self.compute_delay(ctx.attempt)
                RETRY_ATTEMPTS.labels(outcome="scheduled").inc()
                result = on_retry(exc, ctx.attempt, delay_ms)
                if asyncio.iscoroutine(result):
                    await result
                await self._sleep(delay_ms / 1000.0)
                ctx.attempt += 1
