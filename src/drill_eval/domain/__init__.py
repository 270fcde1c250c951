"""Domain entities for the evaluation pipeline."""

from drill_eval.domain.claim import Claim
from drill_eval.domain.evaluation_request import EvaluationRequest, RequestStatus
from drill_eval.domain.feedback import FALLBACK_MODEL, Feedback
from drill_eval.domain.status import EvaluationPhase, EvaluationStatusEntity
from drill_eval.domain.submission import Submission, audio_format_of

__all__ = [
    "FALLBACK_MODEL",
    "Claim",
    "EvaluationPhase",
    "EvaluationRequest",
    "EvaluationStatusEntity",
    "Feedback",
    "RequestStatus",
    "Submission",
    "audio_format_of",
]
