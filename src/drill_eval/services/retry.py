"""Retry with configurable backoff strategy and jitter."""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Generic, TypeVar

import httpx
from loguru import logger

from drill_eval.exceptions import EvaluationError

T = TypeVar("T")


class RetryStrategy(StrEnum):
    """How the delay grows between attempts."""

    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    CUSTOM = "custom"


def default_error_filter(exc: BaseException) -> bool:
    """Retry transient failures only.

    Normalized errors decide through their ``retryable`` flag, so circuit-open,
    validation and auth errors are never retried. Raw network and timeout
    errors are retried.
    """
    if isinstance(exc, EvaluationError):
        return exc.retryable
    return isinstance(exc, (TimeoutError, ConnectionError, httpx.TransportError))


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings for one logical call.

    Delays are in seconds. ``jitter`` adds up to ``jitter * delay`` of
    positive random jitter before the delay is clamped to ``max_delay``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    jitter: float = 0.1
    error_filter: Callable[[BaseException], bool] = default_error_filter
    custom_delay: Callable[[int, float], float] | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.strategy == RetryStrategy.CUSTOM and self.custom_delay is None:
            raise ValueError("custom strategy requires custom_delay")

    def base_delay_for(self, attempt: int) -> float:
        """Delay before retrying after failed attempt ``attempt`` (1-based)."""
        if self.strategy == RetryStrategy.FIXED:
            return self.base_delay
        if self.strategy == RetryStrategy.LINEAR:
            return self.base_delay * attempt
        if self.strategy == RetryStrategy.EXPONENTIAL:
            return self.base_delay * 2 ** (attempt - 1)
        return self.custom_delay(attempt, self.base_delay)

    def delay_for(
        self,
        attempt: int,
        error: BaseException | None = None,
        rng: random.Random | None = None,
    ) -> float:
        """Jittered, clamped delay; a provider ``retry_after`` is a minimum."""
        delay = self.base_delay_for(attempt)
        if self.jitter:
            delay += (rng or random).random() * self.jitter * delay
        delay = min(delay, self.max_delay)

        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, float(retry_after))
        return delay


@dataclass
class RetryAttempt:
    """Diagnostic record of a single attempt."""

    attempt: int
    timestamp: datetime
    delay: float = 0.0
    error: BaseException | None = None


@dataclass
class RetryResult(Generic[T]):
    """Value of a successful call plus its attempt history."""

    value: T
    attempts: list[RetryAttempt] = field(default_factory=list)
    total_time_ms: int = 0


class RetryExecutor:
    """Run an async operation under a ``RetryPolicy``.

    The last error is re-raised unmodified once attempts run out or a
    non-retryable error occurs; the attempt history is attached to it as
    ``retry_attempts`` for logging.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy
        self._sleep = sleep
        self._rng = rng

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
        on_retry: Callable[[RetryAttempt], Awaitable[None]] | None = None,
    ) -> RetryResult[T]:
        """Call ``operation`` until it succeeds or retrying stops.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt.
            operation_name: Label used in logs.
            on_retry: Awaited after a failed attempt, before sleeping.
        """
        start_time = time.perf_counter()
        attempts: list[RetryAttempt] = []

        for attempt in range(1, self.policy.max_attempts + 1):
            record = RetryAttempt(attempt=attempt, timestamp=datetime.now(UTC))
            attempts.append(record)
            try:
                value = await operation()
            except Exception as exc:
                record.error = exc
                is_last = attempt == self.policy.max_attempts
                if is_last or not self.policy.error_filter(exc):
                    logger.warning(
                        "Retry sequence ended with error",
                        operation=operation_name,
                        attempts=attempt,
                        error=f"{type(exc).__name__}: {exc}",
                        retryable=self.policy.error_filter(exc),
                    )
                    exc.retry_attempts = attempts
                    raise

                record.delay = self.policy.delay_for(attempt, exc, self._rng)
                logger.info(
                    "Retrying after failure",
                    operation=operation_name,
                    attempt=attempt,
                    max_attempts=self.policy.max_attempts,
                    delay_seconds=round(record.delay, 3),
                    error=f"{type(exc).__name__}: {exc}",
                )
                if on_retry is not None:
                    await on_retry(record)
                await self._sleep(record.delay)
                continue

            return RetryResult(
                value=value,
                attempts=attempts,
                total_time_ms=int((time.perf_counter() - start_time) * 1000),
            )

        # max_attempts >= 1 guarantees the loop returns or raises
        raise AssertionError("unreachable")
