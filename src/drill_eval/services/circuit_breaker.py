"""Per-dependency circuit breaker."""

import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TypeVar

from loguru import logger

from drill_eval.exceptions import ErrorKind, EvaluationError

T = TypeVar("T")

# Failures that do not reflect on the dependency.
_NEUTRAL_KINDS = frozenset({ErrorKind.VALIDATION_ERROR, ErrorKind.BUSINESS_LOGIC_ERROR})


class BreakerStatus(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass(frozen=True)
class CircuitBreakerState:
    """Snapshot of a breaker, safe to hand out to other threads."""

    name: str
    status: BreakerStatus
    consecutive_failures: int
    opened_at: float | None
    threshold: int
    open_duration: float


StateListener = Callable[[str, BreakerStatus, BreakerStatus], None]


class CircuitBreaker:
    """Stop calling a dependency after repeated failures.

    closed: calls pass; ``threshold`` consecutive failures open the breaker.
    open: calls fail fast with CIRCUIT_BREAKER_OPEN until ``open_duration``
    seconds have passed since opening.
    half-open: exactly one trial call is let through; success closes the
    breaker, failure reopens it. Other calls fail fast while the trial runs.

    All state lives behind a lock so concurrent evaluations share counters.
    """

    def __init__(
        self,
        name: str,
        threshold: int = 5,
        open_duration: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        listener: StateListener | None = None,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.name = name
        self.threshold = threshold
        self.open_duration = open_duration
        self._clock = clock
        self._listener = listener
        self._lock = threading.Lock()
        self._status = BreakerStatus.CLOSED
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def status(self) -> BreakerStatus:
        with self._lock:
            return self._status

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            return CircuitBreakerState(
                name=self.name,
                status=self._status,
                consecutive_failures=self._failures,
                opened_at=self._opened_at,
                threshold=self.threshold,
                open_duration=self.open_duration,
            )

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` if the breaker allows it and record the outcome.

        Validation errors raised before the dependency is reached, and
        business-rule rejections of a result it did return, say nothing about
        its health and leave the counters untouched.
        """
        self.before_call()
        try:
            result = await operation()
        except EvaluationError as exc:
            if exc.kind in _NEUTRAL_KINDS:
                self.release_trial()
            else:
                self.record_failure()
            raise
        except Exception:
            self.record_failure()
            raise
        except BaseException:
            self.release_trial()
            raise
        self.record_success()
        return result

    def before_call(self) -> None:
        """Admit or reject a call.

        Raises:
            EvaluationError: CIRCUIT_BREAKER_OPEN with ``retry_after`` seconds.
        """
        transition = None
        with self._lock:
            if self._status == BreakerStatus.OPEN:
                elapsed = self._clock() - (self._opened_at or 0.0)
                if elapsed < self.open_duration:
                    raise EvaluationError.circuit_open(
                        self.name, retry_after=round(self.open_duration - elapsed, 3)
                    )
                transition = self._set_status(BreakerStatus.HALF_OPEN)
                self._trial_in_flight = True
            elif self._status == BreakerStatus.HALF_OPEN:
                if self._trial_in_flight:
                    raise EvaluationError.circuit_open(
                        self.name, retry_after=self.open_duration
                    )
                self._trial_in_flight = True
        self._notify(transition)

    def record_success(self) -> None:
        transition = None
        with self._lock:
            self._failures = 0
            if self._status == BreakerStatus.HALF_OPEN:
                self._trial_in_flight = False
                self._opened_at = None
                transition = self._set_status(BreakerStatus.CLOSED)
        self._notify(transition)

    def record_failure(self) -> None:
        transition = None
        with self._lock:
            self._failures += 1
            if self._status == BreakerStatus.HALF_OPEN:
                self._trial_in_flight = False
                self._opened_at = self._clock()
                transition = self._set_status(BreakerStatus.OPEN)
            elif (
                self._status == BreakerStatus.CLOSED
                and self._failures >= self.threshold
            ):
                self._opened_at = self._clock()
                transition = self._set_status(BreakerStatus.OPEN)
        self._notify(transition)

    def release_trial(self) -> None:
        """Give up a half-open trial slot without judging the dependency."""
        with self._lock:
            self._trial_in_flight = False

    def reset(self) -> None:
        transition = None
        with self._lock:
            self._failures = 0
            self._opened_at = None
            self._trial_in_flight = False
            transition = self._set_status(BreakerStatus.CLOSED)
        self._notify(transition)

    def _set_status(
        self, status: BreakerStatus
    ) -> tuple[BreakerStatus, BreakerStatus] | None:
        previous = self._status
        self._status = status
        if previous == status:
            return None
        return previous, status

    def _notify(self, transition: tuple[BreakerStatus, BreakerStatus] | None) -> None:
        if transition is None:
            return
        previous, current = transition
        logger.warning(
            "Circuit breaker state changed",
            dependency=self.name,
            previous=previous.value,
            current=current.value,
        )
        if self._listener is not None:
            self._listener(self.name, previous, current)


class CircuitBreakerRegistry:
    """Hands out one breaker per dependency name."""

    def __init__(
        self,
        threshold: int = 5,
        open_duration: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        listener: StateListener | None = None,
    ) -> None:
        self.threshold = threshold
        self.open_duration = open_duration
        self._clock = clock
        self._listener = listener
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    threshold=self.threshold,
                    open_duration=self.open_duration,
                    clock=self._clock,
                    listener=self._listener,
                )
                self._breakers[name] = breaker
            return breaker

    def snapshots(self) -> list[CircuitBreakerState]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [breaker.snapshot() for breaker in breakers]
