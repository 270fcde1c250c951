"""Tests for retry and circuit breaking composed by ResilientCaller."""

import pytest

from conftest import RecordingSink, no_sleep
from drill_eval.exceptions import ErrorKind, EvaluationError
from drill_eval.services.analytics import SafeAnalytics
from drill_eval.services.circuit_breaker import BreakerStatus, CircuitBreaker
from drill_eval.services.resilience import ResilientCaller
from drill_eval.services.retry import RetryExecutor, RetryPolicy


def _caller(
    breaker: CircuitBreaker, max_attempts: int = 3, analytics: SafeAnalytics | None = None
) -> ResilientCaller:
    executor = RetryExecutor(RetryPolicy(max_attempts=max_attempts, jitter=0), sleep=no_sleep)
    return ResilientCaller(breaker, executor, analytics)


class TestResilientCaller:
    """Tests for ResilientCaller.call."""

    async def test_transient_failure_is_retried(self) -> None:
        breaker = CircuitBreaker("text_analysis", threshold=5)
        calls = 0

        async def operation() -> str:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise EvaluationError.timeout("OpenAI", 30)
            return "analysis"

        result = await _caller(breaker).call(operation)

        assert result.value == "analysis"
        assert calls == 2
        assert breaker.snapshot().consecutive_failures == 0

    async def test_breaker_is_consulted_before_every_attempt(self) -> None:
        """Once the breaker opens mid-sequence, no further attempts are made."""
        breaker = CircuitBreaker("text_analysis", threshold=2)
        calls = 0

        async def operation() -> None:
            nonlocal calls
            calls += 1
            raise EvaluationError.service("OpenAI", "down")

        with pytest.raises(EvaluationError) as exc_info:
            await _caller(breaker, max_attempts=5).call(operation)

        assert calls == 2
        assert exc_info.value.kind == ErrorKind.CIRCUIT_BREAKER_OPEN
        assert exc_info.value.retry_after is not None
        assert breaker.status == BreakerStatus.OPEN

    async def test_retry_attempts_are_reported(self) -> None:
        sink = RecordingSink()
        breaker = CircuitBreaker("speech", threshold=10)
        seen: list[int] = []

        async def operation() -> None:
            raise EvaluationError.service("OpenAI", "down")

        async def on_retry(record) -> None:
            seen.append(record.attempt)

        with pytest.raises(EvaluationError):
            await _caller(breaker, analytics=SafeAnalytics(sink)).call(
                operation, on_retry=on_retry
            )

        assert seen == [1, 2]
        assert sink.names() == ["retry_attempted", "retry_attempted"]
        assert sink.events[0][1]["dependency"] == "speech"

    async def test_non_retryable_error_counts_once(self) -> None:
        breaker = CircuitBreaker("text_analysis", threshold=5)

        async def operation() -> None:
            raise EvaluationError.service("OpenAI", "bad request", retryable=False)

        with pytest.raises(EvaluationError):
            await _caller(breaker).call(operation)

        assert breaker.snapshot().consecutive_failures == 1
