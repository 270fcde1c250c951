"""Feedback entity: the result of one evaluation."""

import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, Field, ValidationError

from drill_eval.exceptions import EvaluationError

FALLBACK_MODEL = "fallback"
FALLBACK_MESSAGE = (
    "We're sorry, automated feedback is temporarily unavailable. "
    "Your answer was received; please try again later for a detailed evaluation."
)
FALLBACK_STRENGTH = "Your submission was received successfully"
FALLBACK_IMPROVEMENT = "Please try again later for detailed feedback"

MIN_FEEDBACK_LENGTH = 10
MAX_FEEDBACK_LENGTH = 1000
MAX_LIST_ITEMS = 5


class Feedback(BaseModel):
    """Validated evaluation result for a submission."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    submission_id: str
    score: int = Field(ge=0, le=100)
    feedback: str = Field(min_length=MIN_FEEDBACK_LENGTH, max_length=MAX_FEEDBACK_LENGTH)
    strengths: list[str] = Field(min_length=1, max_length=MAX_LIST_ITEMS)
    improvements: list[str] = Field(min_length=1, max_length=MAX_LIST_ITEMS)
    model: str = Field(min_length=1)
    processing_time_ms: int = Field(ge=0)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_fallback(self) -> bool:
        return self.model == FALLBACK_MODEL

    @classmethod
    def build(
        cls,
        submission_id: str,
        score: int,
        feedback: str,
        strengths: list[str],
        improvements: list[str],
        model: str,
        processing_time_ms: int,
    ) -> "Feedback":
        """Create feedback, rejecting results that break its invariants.

        Blank strengths/improvements are dropped first, so a list of only
        blank lines counts as empty.

        Raises:
            EvaluationError: BUSINESS_LOGIC_ERROR when the analysis result is
                out of range, too short or missing strengths/improvements.
        """
        strengths = [item.strip() for item in strengths if item and item.strip()]
        improvements = [item.strip() for item in improvements if item and item.strip()]

        if not strengths or not improvements:
            raise EvaluationError.business_rule(
                "Analysis result must include at least one strength and one improvement",
                strengths_count=len(strengths),
                improvements_count=len(improvements),
            )

        try:
            return cls(
                submission_id=submission_id,
                score=score,
                feedback=feedback.strip(),
                strengths=strengths,
                improvements=improvements,
                model=model,
                processing_time_ms=processing_time_ms,
            )
        except ValidationError as exc:
            raise EvaluationError.business_rule(
                "Analysis result failed feedback validation",
                errors=[
                    {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in exc.errors()
                ],
            ) from exc

    @classmethod
    def fallback(
        cls, submission_id: str, score: int, processing_time_ms: int
    ) -> "Feedback":
        """Degraded but valid feedback used when providers are unavailable."""
        return cls(
            submission_id=submission_id,
            score=score,
            feedback=FALLBACK_MESSAGE,
            strengths=[FALLBACK_STRENGTH],
            improvements=[FALLBACK_IMPROVEMENT],
            model=FALLBACK_MODEL,
            processing_time_ms=processing_time_ms,
        )
