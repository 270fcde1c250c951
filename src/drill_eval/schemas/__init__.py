"""Pydantic schemas for the evaluation API."""

from drill_eval.schemas.common import ErrorResponse, ErrorResponseWithDetails, HealthResponse
from drill_eval.schemas.evaluation import (
    EvaluateRequest,
    EvaluateResponse,
    EvaluationStatusResponse,
    FeedbackResponse,
)

__all__ = [
    "ErrorResponse",
    "ErrorResponseWithDetails",
    "EvaluateRequest",
    "EvaluateResponse",
    "EvaluationStatusResponse",
    "FeedbackResponse",
    "HealthResponse",
]
