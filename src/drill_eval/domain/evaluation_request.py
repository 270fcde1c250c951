"""EvaluationRequest: idempotency and retry envelope for a submission."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from drill_eval.exceptions import EvaluationError


class RequestStatus(StrEnum):
    """Lifecycle of an evaluation request."""

    PENDING = "pending"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.FAILED)


_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.PROCESSING, RequestStatus.FAILED}),
    RequestStatus.PROCESSING: frozenset(
        {RequestStatus.RETRYING, RequestStatus.COMPLETED, RequestStatus.FAILED}
    ),
    RequestStatus.RETRYING: frozenset(
        {
            RequestStatus.RETRYING,
            RequestStatus.PROCESSING,
            RequestStatus.COMPLETED,
            RequestStatus.FAILED,
        }
    ),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.FAILED: frozenset(),
}


@dataclass
class EvaluationRequest:
    """One evaluation attempt per caller ``requestId``.

    ``id`` is the caller-supplied request id, so at most one request exists
    for a given idempotency key. Once completed or failed the request is
    frozen; every mutator raises on a terminal request.
    """

    id: str
    submission_id: str
    requested_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    retry_count: int = 0
    status: RequestStatus = RequestStatus.PENDING
    error_code: str | None = None
    error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def start(self) -> None:
        self._transition(RequestStatus.PROCESSING)

    def mark_retrying(self) -> None:
        self._transition(RequestStatus.RETRYING)
        self.retry_count += 1

    def complete(self) -> None:
        self._transition(RequestStatus.COMPLETED)
        self.error_code = None
        self.error_message = None

    def fail(self, error: EvaluationError) -> None:
        self._transition(RequestStatus.FAILED)
        self.error_code = error.error_code
        self.error_message = error.message

    def _transition(self, target: RequestStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise EvaluationError.business_rule(
                f"Evaluation request cannot move from '{self.status}' to '{target}'",
                request_id=self.id,
                current_status=self.status.value,
                target_status=target.value,
            )
        self.status = target
