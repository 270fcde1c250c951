"""Idempotent request intake and status polling."""

import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum
from typing import Any

from loguru import logger

from drill_eval.domain.claim import Claim
from drill_eval.domain.evaluation_request import RequestStatus
from drill_eval.domain.feedback import Feedback
from drill_eval.domain.status import EvaluationPhase, EvaluationStatusEntity
from drill_eval.domain.submission import Submission
from drill_eval.exceptions import ErrorKind, EvaluationError
from drill_eval.services.job_queue import (
    EvaluationJob,
    JobNotFound,
    JobQueue,
    JobStatus,
    JobWaitTimeout,
)
from drill_eval.services.stores import EvaluationStateStore, IdempotencyStore

DEFAULT_QUESTION_ID = "general"


class SubmissionState(StrEnum):
    COMPLETED = "completed"
    QUEUED = "queued"


@dataclass(frozen=True)
class SubmissionOutcome:
    """What the caller gets back from ``submit``."""

    state: SubmissionState
    job_id: str
    request_id: str
    result: Feedback | None = None
    poll_url: str | None = None


@dataclass(frozen=True)
class JobStatusView:
    """Poll response for one job."""

    job_id: str
    request_id: str
    status: str
    progress: int
    message: str
    updated_at: datetime
    result: Feedback | None = None
    error: dict[str, Any] | None = None


class EvaluationIntakeService:
    """Accept submissions, deduplicate them by request id and wait briefly.

    The first submission for a request id claims it and enqueues a job.
    Duplicates join that job. Nobody waits longer than ``sync_wait_seconds``;
    a job still running after that is reported as queued with a poll URL.
    """

    def __init__(
        self,
        queue: JobQueue,
        idempotency_store: IdempotencyStore,
        state_store: EvaluationStateStore,
        sync_wait_seconds: float = 30.0,
        status_path: str = "/api/evaluate/status",
    ) -> None:
        self.queue = queue
        self.idempotency_store = idempotency_store
        self.state_store = state_store
        self.sync_wait_seconds = sync_wait_seconds
        self.status_path = status_path.rstrip("/")

    async def submit(
        self,
        user_id: str,
        request_id: str,
        text: str | None = None,
        audio_url: str | None = None,
        question_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SubmissionOutcome:
        """Evaluate a submission at most once per ``request_id``.

        Raises:
            EvaluationError: INVALID_REQUEST for a malformed request id,
                VALIDATION_ERROR when neither text nor audio is given,
                NOT_FOUND when the request id belongs to another caller, or
                the recorded error of an evaluation that failed.
        """
        request_id = self._parse_request_id(request_id)
        text = text or ""
        audio_url = (audio_url or "").strip() or None
        if not text.strip() and audio_url is None:
            raise EvaluationError.validation(
                "Either text or audioUrl must be provided", field="text"
            )

        existing = await self.idempotency_store.get_claim(request_id)
        if existing is not None:
            self._ensure_owner(existing, user_id, request_id)
            stored = await self.idempotency_store.get(request_id)
            if stored is not None:
                logger.info(
                    "Returning stored evaluation",
                    request_id=request_id,
                    job_id=existing.job_id,
                )
                return self._completed(request_id, existing.job_id, stored)

        submission = Submission(
            user_id=user_id,
            question_id=question_id or DEFAULT_QUESTION_ID,
            content=text,
            audio_reference=audio_url,
            metadata=dict(metadata or {}),
        )
        job = EvaluationJob(request_id=request_id, submission=submission)

        claim = await self.idempotency_store.claim(
            request_id, Claim(job_id=job.id, user_id=user_id)
        )
        self._ensure_owner(claim, user_id, request_id)
        if claim.job_id == job.id:
            await self.state_store.save_status(
                EvaluationStatusEntity(
                    id=job.id,
                    submission_id=submission.id,
                    request_id=request_id,
                    user_id=user_id,
                    question_id=submission.question_id,
                    has_audio=submission.has_audio,
                    message="Evaluation queued",
                )
            )
            await self.queue.enqueue(job)
        else:
            logger.info("Joining existing evaluation", request_id=request_id, job_id=claim.job_id)

        return await self._wait(request_id, claim.job_id, submission)

    async def poll(self, user_id: str, job_id: str) -> JobStatusView:
        """Report progress, result or failure of a job owned by ``user_id``.

        Raises:
            EvaluationError: NOT_FOUND for unknown jobs and for jobs owned
                by another caller.
        """
        status = await self.state_store.get_status(job_id)
        if status is None or status.user_id != user_id:
            raise EvaluationError.not_found("Evaluation job", job_id)

        view = JobStatusView(
            job_id=status.id,
            request_id=status.request_id,
            status=status.status.value,
            progress=status.progress,
            message=status.message,
            updated_at=status.updated_at,
        )

        if status.status == EvaluationPhase.COMPLETED:
            result = await self.idempotency_store.get(status.request_id)
            return replace(view, result=result)

        if status.status == EvaluationPhase.FAILED:
            return replace(
                view,
                error={
                    "code": status.error_code or ErrorKind.INTERNAL_ERROR.value,
                    "message": status.error_message or "Evaluation failed",
                },
            )

        # The worker may have given up without recording a failure.
        record = self.queue.get(job_id)
        if record is not None and record.status == JobStatus.FAILED and record.error:
            return replace(
                view,
                status=EvaluationPhase.FAILED.value,
                message=record.error.message,
                error={"code": record.error.error_code, "message": record.error.message},
            )
        return view

    async def _wait(
        self,
        request_id: str,
        job_id: str,
        submission: Submission,
        requeue: bool = True,
    ) -> SubmissionOutcome:
        try:
            outcome = await self.queue.wait_until_finished(job_id, self.sync_wait_seconds)
        except JobNotFound:
            # Pruned from this queue, lost in a restart, or run elsewhere.
            settled = await self._settled(request_id, job_id)
            if settled is not None:
                return settled
            if requeue:
                logger.warning(
                    "Evaluation job unknown to this process, queueing it again",
                    request_id=request_id,
                    job_id=job_id,
                )
                await self.queue.enqueue(
                    EvaluationJob(request_id=request_id, submission=submission, id=job_id)
                )
                return await self._wait(request_id, job_id, submission, requeue=False)
            return self._queued(request_id, job_id)
        except JobWaitTimeout:
            stored = await self.idempotency_store.get(request_id)
            if stored is not None:
                return self._completed(request_id, job_id, stored)
            logger.info(
                "Evaluation still running, returning poll URL",
                request_id=request_id,
                job_id=job_id,
            )
            return self._queued(request_id, job_id)

        if outcome.status == JobStatus.COMPLETED and outcome.result is not None:
            return self._completed(request_id, job_id, outcome.result)

        error = outcome.error
        if error is None:
            raise EvaluationError(
                ErrorKind.INTERNAL_ERROR,
                "Evaluation finished without a result",
                details={"job_id": job_id},
            )
        # Each caller gets its own exception instance.
        raise EvaluationError(
            error.kind,
            error.message,
            details={**error.details, "job_id": job_id},
            retry_after=error.retry_after,
            retryable=error.retryable,
        )

    async def _settled(self, request_id: str, job_id: str) -> SubmissionOutcome | None:
        """Outcome recorded in the stores, or None while the request is open.

        Raises:
            EvaluationError: The recorded error of a failed request.
        """
        stored = await self.idempotency_store.get(request_id)
        if stored is not None:
            return self._completed(request_id, job_id, stored)

        request = await self.state_store.get_request(request_id)
        if request is not None and request.status == RequestStatus.FAILED:
            raise EvaluationError.from_dict(
                {
                    "code": request.error_code,
                    "message": request.error_message,
                    "details": {"request_id": request_id, "job_id": job_id},
                }
            )
        return None

    def _queued(self, request_id: str, job_id: str) -> SubmissionOutcome:
        return SubmissionOutcome(
            state=SubmissionState.QUEUED,
            job_id=job_id,
            request_id=request_id,
            poll_url=f"{self.status_path}/{job_id}",
        )

    @staticmethod
    def _ensure_owner(claim: Claim, user_id: str, request_id: str) -> None:
        if not claim.is_owned_by(user_id):
            logger.warning("Request id presented by another caller", request_id=request_id)
            raise EvaluationError.not_found("Evaluation request", request_id)

    @staticmethod
    def _completed(request_id: str, job_id: str, result: Feedback) -> SubmissionOutcome:
        return SubmissionOutcome(
            state=SubmissionState.COMPLETED,
            job_id=job_id,
            request_id=request_id,
            result=result,
        )

    @staticmethod
    def _parse_request_id(request_id: str | None) -> str:
        try:
            return str(uuid.UUID(str(request_id)))
        except (TypeError, ValueError, AttributeError):
            raise EvaluationError.invalid_request(
                "requestId must be a valid UUID", field="requestId"
            ) from None
