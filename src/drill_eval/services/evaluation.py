"""Evaluation use case: validate, transcribe, analyze, build feedback.

Runs inside a queue worker. Every run re-derives its state from the job
payload and the stores, so the queue may safely run a job more than once.
"""

import time
from dataclasses import dataclass

from loguru import logger

from drill_eval.domain.evaluation_request import EvaluationRequest, RequestStatus
from drill_eval.domain.feedback import Feedback
from drill_eval.domain.status import (
    PROGRESS_ANALYZING_TEXT,
    PROGRESS_BUILDING_FEEDBACK,
    PROGRESS_STARTED,
    PROGRESS_TRANSCRIBED,
    PROGRESS_TRANSCRIBING,
    EvaluationPhase,
    EvaluationStatusEntity,
)
from drill_eval.domain.submission import Submission, audio_format_of
from drill_eval.exceptions import (
    PROVIDER_UNAVAILABLE_KINDS,
    ErrorKind,
    EvaluationError,
    normalize_error,
)
from drill_eval.services.analytics import AnalyticsEvent, SafeAnalytics
from drill_eval.services.job_queue import EvaluationJob
from drill_eval.services.resilience import ResilientCaller
from drill_eval.services.retry import RetryAttempt
from drill_eval.services.speech import SpeechAdapter, TranscriptionOptions
from drill_eval.services.stores import EvaluationStateStore, IdempotencyStore
from drill_eval.services.text_analysis import AnalysisContext, TextAnalysisAdapter


@dataclass
class EvaluationResult:
    """Outcome of one successful evaluation run."""

    submission: Submission
    feedback: Feedback
    request: EvaluationRequest
    status: EvaluationStatusEntity | None
    processing_time_ms: int
    used_fallback: bool = False
    cached: bool = False


class EvaluationService:
    """Orchestrate one submission through speech and text analysis."""

    def __init__(
        self,
        speech_adapter: SpeechAdapter,
        text_adapter: TextAnalysisAdapter,
        speech_caller: ResilientCaller,
        text_caller: ResilientCaller,
        idempotency_store: IdempotencyStore,
        state_store: EvaluationStateStore,
        analytics: SafeAnalytics,
        fallback_enabled: bool = False,
        fallback_score: int = 0,
        transcription_options: TranscriptionOptions | None = None,
    ) -> None:
        self.speech_adapter = speech_adapter
        self.text_adapter = text_adapter
        self.speech_caller = speech_caller
        self.text_caller = text_caller
        self.idempotency_store = idempotency_store
        self.state_store = state_store
        self.analytics = analytics
        self.fallback_enabled = fallback_enabled
        self.fallback_score = fallback_score
        self.transcription_options = transcription_options or TranscriptionOptions()

    async def run_job(self, job: EvaluationJob) -> Feedback:
        """Queue handler entry point."""
        result = await self.evaluate(job.request_id, job.id, job.submission)
        return result.feedback

    async def evaluate(
        self, request_id: str, status_id: str, submission: Submission
    ) -> EvaluationResult:
        """Evaluate ``submission`` for ``request_id``, publishing progress.

        Raises:
            EvaluationError: The normalized failure, after the request and
                status have been marked failed.
        """
        start_time = time.perf_counter()

        stored = await self.idempotency_store.get(request_id)
        if stored is not None:
            return await self._replay(request_id, status_id, submission, stored)

        request = await self._load_request(request_id, submission)
        status = await self._load_status(status_id, request_id, submission)

        log = logger.bind(
            request_id=request_id,
            job_id=status_id,
            submission_id=submission.id,
        )
        log.info(
            "Evaluation started",
            question_id=submission.question_id,
            has_audio=submission.has_audio,
            retry_count=request.retry_count,
        )
        await self.analytics.track(
            AnalyticsEvent.SUBMISSION_STARTED,
            request_id=request_id,
            question_id=submission.question_id,
            has_audio=submission.has_audio,
        )

        used_fallback = False
        try:
            submission.validate()
            if request.status != RequestStatus.PROCESSING:
                request.start()
            await self.state_store.save_request(request)
            status.advance(
                PROGRESS_STARTED,
                "Starting evaluation process",
                status=EvaluationPhase.PROCESSING,
            )
            await self.state_store.save_status(status)

            feedback = await self._process(submission, request, status, start_time)
        except Exception as exc:
            error = normalize_error(
                exc,
                {
                    "request_id": request_id,
                    "question_id": submission.question_id,
                    "has_audio": submission.has_audio,
                },
            )
            if not self._should_fall_back(error):
                await self._record_failure(request, status, error)
                log.error(
                    "Evaluation failed",
                    error_code=error.error_code,
                    error=error.message,
                )
                if error is exc:
                    raise
                raise error from exc

            log.warning(
                "Providers unavailable, returning fallback feedback",
                error_code=error.error_code,
            )
            used_fallback = True
            feedback = Feedback.fallback(
                submission.id,
                score=self.fallback_score,
                processing_time_ms=self._elapsed_ms(start_time),
            )
            await self.analytics.track(
                AnalyticsEvent.FALLBACK_USED,
                request_id=request_id,
                error_code=error.error_code,
            )

        # Result first: a crash after this point replays the stored result.
        feedback = await self.idempotency_store.put(request_id, feedback)
        request.complete()
        await self.state_store.save_request(request)
        status.complete()
        await self.state_store.save_status(status)

        processing_time_ms = self._elapsed_ms(start_time)
        log.info(
            "Evaluation completed",
            score=feedback.score,
            model=feedback.model,
            processing_time_ms=processing_time_ms,
        )
        await self.analytics.track(
            AnalyticsEvent.SUBMISSION_COMPLETED,
            request_id=request_id,
            score=feedback.score,
            model=feedback.model,
            fallback=used_fallback,
            processing_time_ms=processing_time_ms,
        )
        return EvaluationResult(
            submission=submission,
            feedback=feedback,
            request=request,
            status=status,
            processing_time_ms=processing_time_ms,
            used_fallback=used_fallback,
        )

    async def _process(
        self,
        submission: Submission,
        request: EvaluationRequest,
        status: EvaluationStatusEntity,
        start_time: float,
    ) -> Feedback:
        text = submission.content

        async def on_retry(_attempt: RetryAttempt) -> None:
            request.mark_retrying()
            await self.state_store.save_request(request)

        async def resume() -> None:
            if request.status == RequestStatus.RETRYING:
                request.start()
                await self.state_store.save_request(request)

        if submission.needs_transcription:
            status.advance(PROGRESS_TRANSCRIBING, "Transcribing audio content...")
            await self.state_store.save_status(status)
            text = await self._transcribe(submission.audio_reference, resume, on_retry)
            status.advance(
                PROGRESS_TRANSCRIBED,
                "Audio transcription completed, analyzing content...",
            )
        else:
            status.advance(PROGRESS_ANALYZING_TEXT, "Analyzing text content...")
        await self.state_store.save_status(status)

        context = AnalysisContext(
            question_id=submission.question_id,
            user_id=submission.user_id,
            metadata=dict(submission.metadata),
        )

        async def analyze():
            await resume()
            return await self.text_adapter.analyze(text, context)

        outcome = await self.text_caller.call(analyze, on_retry=on_retry)
        await resume()
        analysis = outcome.value
        logger.debug(
            "Text analysis finished",
            request_id=request.id,
            attempts=len(outcome.attempts),
            score=analysis.score,
        )

        status.advance(PROGRESS_BUILDING_FEEDBACK, "Generating feedback...")
        await self.state_store.save_status(status)

        return Feedback.build(
            submission_id=submission.id,
            score=analysis.score,
            feedback=analysis.feedback,
            strengths=analysis.strengths,
            improvements=analysis.improvements,
            model=analysis.model or self.text_adapter.model_name,
            processing_time_ms=self._elapsed_ms(start_time),
        )

    async def _transcribe(self, audio_reference: str, resume, on_retry) -> str:
        audio_format = audio_format_of(audio_reference)
        if not self.speech_adapter.supports_format(audio_format):
            supported = ", ".join(self.speech_adapter.get_supported_formats())
            raise EvaluationError.validation(
                f"Audio format '{audio_format}' is not supported. "
                f"Supported formats: {supported}",
                field="audio_url",
            )

        async def transcribe():
            await resume()
            return await self.speech_adapter.transcribe(
                audio_reference, self.transcription_options
            )

        outcome = await self.speech_caller.call(transcribe, on_retry=on_retry)
        text = outcome.value.text
        if not text or not text.strip():
            raise EvaluationError.validation(
                "No text was transcribed from the audio file", field="audio_url"
            )
        return text

    async def _replay(
        self,
        request_id: str,
        status_id: str,
        submission: Submission,
        feedback: Feedback,
    ) -> EvaluationResult:
        """Finish bookkeeping for a result that an earlier run already stored."""
        logger.info("Evaluation already stored, replaying", request_id=request_id)
        request = await self.state_store.get_request(request_id)
        if request is None:
            request = EvaluationRequest(id=request_id, submission_id=feedback.submission_id)
            request.start()
        if not request.is_terminal:
            request.complete()
            await self.state_store.save_request(request)

        status = await self.state_store.get_status(status_id)
        if status is not None and not status.is_terminal:
            status.complete()
            await self.state_store.save_status(status)

        return EvaluationResult(
            submission=submission,
            feedback=feedback,
            request=request,
            status=status,
            processing_time_ms=feedback.processing_time_ms,
            used_fallback=feedback.is_fallback,
            cached=True,
        )

    async def _load_request(
        self, request_id: str, submission: Submission
    ) -> EvaluationRequest:
        request = await self.state_store.get_request(request_id)
        if request is None:
            request = EvaluationRequest(id=request_id, submission_id=submission.id)
            await self.state_store.save_request(request)
            return request

        if request.status == RequestStatus.FAILED:
            raise EvaluationError(
                _kind_of(request.error_code),
                request.error_message or "Evaluation failed",
                details={"request_id": request_id},
            )
        if request.status == RequestStatus.COMPLETED:
            raise EvaluationError(
                ErrorKind.INTERNAL_ERROR,
                "Evaluation request completed without a stored result",
                details={"request_id": request_id},
            )
        if request.status in (RequestStatus.PROCESSING, RequestStatus.RETRYING):
            # A previous run died mid-flight; this run is a retry of it.
            request.mark_retrying()
            await self.state_store.save_request(request)
        return request

    async def _load_status(
        self, status_id: str, request_id: str, submission: Submission
    ) -> EvaluationStatusEntity:
        status = await self.state_store.get_status(status_id)
        if status is None:
            status = EvaluationStatusEntity(
                id=status_id,
                submission_id=submission.id,
                request_id=request_id,
                user_id=submission.user_id,
                question_id=submission.question_id,
                has_audio=submission.has_audio,
            )
            await self.state_store.save_status(status)
        elif status.status == EvaluationPhase.FAILED:
            raise EvaluationError(
                _kind_of(status.error_code),
                status.error_message or "Evaluation failed",
                details={"job_id": status_id},
            )
        return status

    async def _record_failure(
        self,
        request: EvaluationRequest,
        status: EvaluationStatusEntity,
        error: EvaluationError,
    ) -> None:
        if not request.is_terminal:
            request.fail(error)
            await self.state_store.save_request(request)
        if not status.is_terminal:
            status.fail(error)
            await self.state_store.save_status(status)
        await self.analytics.track(
            AnalyticsEvent.SUBMISSION_FAILED,
            request_id=request.id,
            error_code=error.error_code,
            retry_count=request.retry_count,
        )

    def _should_fall_back(self, error: EvaluationError) -> bool:
        return self.fallback_enabled and error.kind in PROVIDER_UNAVAILABLE_KINDS

    @staticmethod
    def _elapsed_ms(start_time: float) -> int:
        return int((time.perf_counter() - start_time) * 1000)


def _kind_of(code: str | None) -> ErrorKind:
    try:
        return ErrorKind(code)
    except ValueError:
        return ErrorKind.INTERNAL_ERROR
