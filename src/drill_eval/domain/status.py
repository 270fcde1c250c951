"""Polling-facing evaluation status, decoupled from retry bookkeeping."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from drill_eval.exceptions import EvaluationError


class EvaluationPhase(StrEnum):
    """Status values visible to pollers."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EvaluationPhase.COMPLETED, EvaluationPhase.FAILED)


# Progress checkpoints published while an evaluation advances.
PROGRESS_STARTED = 10
PROGRESS_TRANSCRIBING = 20
PROGRESS_ANALYZING_TEXT = 30
PROGRESS_TRANSCRIBED = 50
PROGRESS_BUILDING_FEEDBACK = 80
PROGRESS_DONE = 100


@dataclass
class EvaluationStatusEntity:
    """Progress record for one evaluation job.

    ``id`` is the job id handed to pollers. Progress only moves forward and
    the record cannot change after reaching completed or failed.
    """

    id: str
    submission_id: str
    request_id: str
    user_id: str
    question_id: str
    has_audio: bool = False
    status: EvaluationPhase = EvaluationPhase.PENDING
    progress: int = 0
    message: str = "Waiting to be processed"
    error_code: str | None = None
    error_message: str | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def advance(
        self,
        progress: int,
        message: str,
        status: EvaluationPhase | None = None,
    ) -> None:
        """Move progress forward; lower values keep the current progress."""
        self._ensure_mutable()
        if not 0 <= progress <= 100:
            raise EvaluationError.business_rule(
                "Progress must be between 0 and 100", progress=progress
            )
        if status is not None:
            if status == EvaluationPhase.PENDING and self.status != EvaluationPhase.PENDING:
                raise EvaluationError.business_rule(
                    "Evaluation status cannot return to pending", status_id=self.id
                )
            self.status = status
        self.progress = max(self.progress, progress)
        self.message = message
        self.updated_at = datetime.now(UTC)

    def complete(self, message: str = "Evaluation completed successfully") -> None:
        self.advance(PROGRESS_DONE, message, status=EvaluationPhase.COMPLETED)

    def fail(self, error: EvaluationError) -> None:
        self._ensure_mutable()
        self.status = EvaluationPhase.FAILED
        self.message = "Evaluation failed"
        self.error_code = error.error_code
        self.error_message = error.message
        self.updated_at = datetime.now(UTC)

    def _ensure_mutable(self) -> None:
        if self.is_terminal:
            raise EvaluationError.business_rule(
                f"Evaluation status is already '{self.status}'",
                status_id=self.id,
            )
