"""Error kinds and the single exception type used across the service."""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Closed set of error kinds the service can raise."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    BUSINESS_LOGIC_ERROR = "BUSINESS_LOGIC_ERROR"
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    LLM_SERVICE_ERROR = "LLM_SERVICE_ERROR"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    @property
    def status_code(self) -> int:
        """HTTP status code reported to callers for this kind."""
        return _STATUS_CODES[self]

    @property
    def retryable(self) -> bool:
        """Whether the retry wrapper may retry errors of this kind."""
        return self in _RETRYABLE_KINDS


_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.AUTHENTICATION_ERROR: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.BUSINESS_LOGIC_ERROR: 422,
    ErrorKind.RATE_LIMIT_ERROR: 429,
    ErrorKind.LLM_SERVICE_ERROR: 502,
    ErrorKind.CIRCUIT_BREAKER_OPEN: 503,
    ErrorKind.TIMEOUT_ERROR: 504,
    ErrorKind.INTERNAL_ERROR: 500,
}

_RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.RATE_LIMIT_ERROR,
        ErrorKind.LLM_SERVICE_ERROR,
        ErrorKind.TIMEOUT_ERROR,
    }
)

# Kinds that mean the provider could not be reached or kept failing.
PROVIDER_UNAVAILABLE_KINDS = frozenset(
    {
        ErrorKind.RATE_LIMIT_ERROR,
        ErrorKind.LLM_SERVICE_ERROR,
        ErrorKind.TIMEOUT_ERROR,
        ErrorKind.CIRCUIT_BREAKER_OPEN,
    }
)


class EvaluationError(Exception):
    """Normalized error carrying a kind and a structured payload."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: dict[str, Any] | None = None,
        retry_after: float | None = None,
        retryable: bool | None = None,
    ) -> None:
        self.kind = kind
        self.message = message
        self.details = details or {}
        self.retry_after = retry_after
        self.retryable = kind.retryable if retryable is None else retryable
        self.timestamp = datetime.now(UTC)
        super().__init__(message)

    @property
    def error_code(self) -> str:
        return self.kind.value

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for logs, storage and API responses."""
        payload: dict[str, Any] = {
            "code": self.kind.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }
        if self.retry_after is not None:
            payload["retry_after"] = self.retry_after
        return payload

    def __repr__(self) -> str:
        return f"EvaluationError({self.kind.value}, {self.message!r})"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EvaluationError":
        """Rebuild an error previously serialized with ``to_dict``."""
        try:
            kind = ErrorKind(data.get("code", ErrorKind.INTERNAL_ERROR))
        except ValueError:
            kind = ErrorKind.INTERNAL_ERROR
        return cls(
            kind,
            data.get("message") or "Evaluation failed",
            details=data.get("details") or {},
            retry_after=data.get("retry_after"),
        )

    # region constructors

    @classmethod
    def validation(
        cls, message: str, field: str | None = None, **details: Any
    ) -> "EvaluationError":
        if field:
            details["field"] = field
        return cls(ErrorKind.VALIDATION_ERROR, message, details=details)

    @classmethod
    def invalid_request(cls, message: str, field: str | None = None) -> "EvaluationError":
        return cls(
            ErrorKind.INVALID_REQUEST,
            message,
            details={"field": field} if field else None,
        )

    @classmethod
    def unauthenticated(cls, message: str = "Authentication required") -> "EvaluationError":
        return cls(ErrorKind.UNAUTHENTICATED, message)

    @classmethod
    def not_found(cls, resource: str, resource_id: Any) -> "EvaluationError":
        return cls(
            ErrorKind.NOT_FOUND,
            f"{resource} with id '{resource_id}' not found",
            details={"resource": resource, "resource_id": str(resource_id)},
        )

    @classmethod
    def business_rule(cls, message: str, **details: Any) -> "EvaluationError":
        return cls(ErrorKind.BUSINESS_LOGIC_ERROR, message, details=details)

    @classmethod
    def service(
        cls, service: str, message: str, retryable: bool | None = None, **details: Any
    ) -> "EvaluationError":
        return cls(
            ErrorKind.LLM_SERVICE_ERROR,
            f"{service} error: {message}",
            details={"service": service, **details},
            retryable=retryable,
        )

    @classmethod
    def rate_limited(
        cls, service: str, retry_after: float | None = None
    ) -> "EvaluationError":
        return cls(
            ErrorKind.RATE_LIMIT_ERROR,
            f"{service} rate limit exceeded",
            details={"service": service},
            retry_after=retry_after,
        )

    @classmethod
    def timeout(cls, service: str, timeout_seconds: float | None = None) -> "EvaluationError":
        return cls(
            ErrorKind.TIMEOUT_ERROR,
            f"{service} request timed out",
            details={"service": service, "timeout_seconds": timeout_seconds},
        )

    @classmethod
    def circuit_open(cls, dependency: str, retry_after: float) -> "EvaluationError":
        return cls(
            ErrorKind.CIRCUIT_BREAKER_OPEN,
            f"Circuit breaker for '{dependency}' is open",
            details={"dependency": dependency},
            retry_after=retry_after,
        )

    # endregion


def normalize_error(exc: BaseException, context: dict[str, Any] | None = None) -> EvaluationError:
    """Map any exception to an ``EvaluationError``.

    Already-normalized errors pass through unchanged. Timeouts become
    ``TIMEOUT_ERROR`` and connection failures ``LLM_SERVICE_ERROR``; anything
    else is a defect and becomes ``INTERNAL_ERROR``, which never falls back.
    """
    if isinstance(exc, EvaluationError):
        return exc
    if isinstance(exc, TimeoutError):
        return EvaluationError(
            ErrorKind.TIMEOUT_ERROR,
            f"Evaluation timed out: {exc}",
            details=context,
        )
    if isinstance(exc, ConnectionError):
        return EvaluationError(
            ErrorKind.LLM_SERVICE_ERROR,
            f"Provider connection failed: {exc}",
            details=context,
        )
    return EvaluationError(
        ErrorKind.INTERNAL_ERROR,
        f"Evaluation failed: {type(exc).__name__}: {exc}",
        details=context,
    )
