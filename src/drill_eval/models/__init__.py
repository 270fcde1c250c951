"""Database models package."""

from drill_eval.models.base import Base
from drill_eval.models.evaluation import (
    EvaluationClaimRecord,
    EvaluationRequestRecord,
    EvaluationResultRecord,
    EvaluationStatusRecord,
)

__all__ = [
    "Base",
    "EvaluationClaimRecord",
    "EvaluationRequestRecord",
    "EvaluationResultRecord",
    "EvaluationStatusRecord",
]
