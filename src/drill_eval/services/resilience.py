"""Retry and circuit breaking composed around one dependency call."""

from collections.abc import Awaitable, Callable
from typing import TypeVar

from drill_eval.services.analytics import AnalyticsEvent, SafeAnalytics
from drill_eval.services.circuit_breaker import CircuitBreaker
from drill_eval.services.retry import RetryAttempt, RetryExecutor, RetryResult

T = TypeVar("T")


class ResilientCaller:
    """Make one logical call to an unreliable dependency survivable.

    Every attempt goes through the breaker first, so an open breaker stops a
    retry sequence midway with CIRCUIT_BREAKER_OPEN, which is never retried.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        retry: RetryExecutor,
        analytics: SafeAnalytics | None = None,
    ) -> None:
        self.breaker = breaker
        self.retry = retry
        self.analytics = analytics

    @property
    def dependency(self) -> str:
        return self.breaker.name

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        on_retry: Callable[[RetryAttempt], Awaitable[None]] | None = None,
    ) -> RetryResult[T]:
        """Run ``operation`` with breaker admission and retries."""

        async def attempt() -> T:
            return await self.breaker.call(operation)

        async def retried(record: RetryAttempt) -> None:
            if self.analytics is not None:
                await self.analytics.track(
                    AnalyticsEvent.RETRY_ATTEMPTED,
                    dependency=self.dependency,
                    attempt=record.attempt,
                    delay_seconds=round(record.delay, 3),
                    error=type(record.error).__name__,
                )
            if on_retry is not None:
                await on_retry(record)

        return await self.retry.run(
            attempt,
            operation_name=self.dependency,
            on_retry=retried,
        )
