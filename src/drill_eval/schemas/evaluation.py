"""Pydantic schemas for evaluation endpoints."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from drill_eval.domain.feedback import Feedback
from drill_eval.services.intake import JobStatusView, SubmissionOutcome


class CamelModel(BaseModel):
    """Accept and emit camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EvaluateRequest(CamelModel):
    """Request model for submitting an answer for evaluation."""

    # Kept as a plain string so a malformed id maps to INVALID_REQUEST.
    request_id: str | None = Field(
        None,
        description="Caller-generated UUID used for idempotency",
        examples=["3fa85f64-5717-4562-b3fc-2c963f66afa6"],
    )
    text: str | None = Field(None, description="Free-text answer")
    audio_url: str | None = Field(
        None, description="http(s) or data: URL of a recorded answer"
    )
    question_id: str | None = Field(None, description="Question being answered")
    metadata: dict[str, Any] | None = Field(
        None, description="Opaque context passed to the analysis"
    )


class FeedbackResponse(CamelModel):
    """Response model for generated feedback."""

    id: str
    submission_id: str
    score: int = Field(..., ge=0, le=100)
    feedback: str
    strengths: list[str]
    improvements: list[str]
    model: str
    processing_time_ms: int
    generated_at: datetime

    @classmethod
    def from_feedback(cls, feedback: Feedback) -> "FeedbackResponse":
        return cls.model_validate(feedback.model_dump())


class EvaluateResponse(CamelModel):
    """Response model for a submission, completed or still queued."""

    status: Literal["completed", "queued"]
    job_id: str
    request_id: str
    result: FeedbackResponse | None = None
    poll_url: str | None = None

    @classmethod
    def from_outcome(cls, outcome: SubmissionOutcome) -> "EvaluateResponse":
        return cls(
            status=outcome.state.value,
            job_id=outcome.job_id,
            request_id=outcome.request_id,
            result=FeedbackResponse.from_feedback(outcome.result) if outcome.result else None,
            poll_url=outcome.poll_url,
        )


class JobError(BaseModel):
    code: str
    message: str


class EvaluationStatusResponse(CamelModel):
    """Response model for polling a queued evaluation."""

    job_id: str
    request_id: str
    status: Literal["pending", "processing", "completed", "failed"]
    progress: int = Field(..., ge=0, le=100)
    message: str
    updated_at: datetime
    result: FeedbackResponse | None = None
    error: JobError | None = None

    @classmethod
    def from_view(cls, view: JobStatusView) -> "EvaluationStatusResponse":
        return cls(
            job_id=view.job_id,
            request_id=view.request_id,
            status=view.status,
            progress=view.progress,
            message=view.message,
            updated_at=view.updated_at,
            result=FeedbackResponse.from_feedback(view.result) if view.result else None,
            error=JobError(**view.error) if view.error else None,
        )
