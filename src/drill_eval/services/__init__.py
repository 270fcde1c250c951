"""Service layer for business logic."""

from drill_eval.services.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from drill_eval.services.evaluation import EvaluationService
from drill_eval.services.intake import EvaluationIntakeService
from drill_eval.services.job_queue import InProcessJobQueue
from drill_eval.services.resilience import ResilientCaller
from drill_eval.services.retry import RetryExecutor, RetryPolicy

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "EvaluationIntakeService",
    "EvaluationService",
    "InProcessJobQueue",
    "ResilientCaller",
    "RetryExecutor",
    "RetryPolicy",
]
