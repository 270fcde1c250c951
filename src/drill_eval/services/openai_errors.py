"""Translate OpenAI SDK exceptions into normalized evaluation errors."""

import openai

from drill_eval.exceptions import ErrorKind, EvaluationError


def _retry_after_seconds(exc: openai.APIStatusError) -> float | None:
    headers = getattr(exc.response, "headers", None) or {}
    raw = headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def map_openai_error(
    service: str, exc: openai.OpenAIError, timeout: float | None = None
) -> EvaluationError:
    """Map an SDK error to the matching error kind.

    Server errors and connection problems are retryable; other 4xx
    responses are not.
    """
    if isinstance(exc, openai.APITimeoutError):
        return EvaluationError.timeout(service, timeout)
    if isinstance(exc, openai.APIConnectionError):
        return EvaluationError.service(service, f"connection failed: {exc}")
    if isinstance(exc, openai.RateLimitError):
        return EvaluationError.rate_limited(service, _retry_after_seconds(exc))
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return EvaluationError(
            ErrorKind.AUTHENTICATION_ERROR,
            f"{service} rejected the configured credentials",
            details={"service": service},
        )
    if isinstance(exc, openai.APIStatusError):
        return EvaluationError.service(
            service,
            str(exc),
            retryable=exc.status_code >= 500,
            status_code=exc.status_code,
        )
    return EvaluationError.service(service, str(exc))
