"""Tests for idempotent intake and status polling."""

import asyncio
import uuid

import pytest

from conftest import FakeSpeechAdapter, FakeTextAdapter, RecordingSink, no_sleep
from drill_eval.domain.claim import Claim
from drill_eval.domain.status import EvaluationStatusEntity
from drill_eval.exceptions import ErrorKind, EvaluationError
from drill_eval.services.analytics import SafeAnalytics
from drill_eval.services.circuit_breaker import CircuitBreaker
from drill_eval.services.evaluation import EvaluationService
from drill_eval.services.intake import EvaluationIntakeService, SubmissionState
from drill_eval.services.job_queue import InProcessJobQueue
from drill_eval.services.resilience import ResilientCaller
from drill_eval.services.retry import RetryExecutor, RetryPolicy
from drill_eval.services.stores import (
    InMemoryEvaluationStateStore,
    InMemoryIdempotencyStore,
)


@pytest.fixture
async def make_intake():
    queues: list[InProcessJobQueue] = []

    def factory(
        text_adapter: FakeTextAdapter | None = None,
        sync_wait_seconds: float = 1.0,
        retain_finished: int = 1000,
    ) -> EvaluationIntakeService:
        retry = RetryExecutor(RetryPolicy(max_attempts=2, jitter=0), sleep=no_sleep)
        idempotency_store = InMemoryIdempotencyStore()
        state_store = InMemoryEvaluationStateStore()
        service = EvaluationService(
            speech_adapter=FakeSpeechAdapter(),
            text_adapter=text_adapter or FakeTextAdapter(),
            speech_caller=ResilientCaller(CircuitBreaker("speech"), retry),
            text_caller=ResilientCaller(CircuitBreaker("text_analysis"), retry),
            idempotency_store=idempotency_store,
            state_store=state_store,
            analytics=SafeAnalytics(RecordingSink()),
        )
        queue = InProcessJobQueue(
            service.run_job,
            concurrency=2,
            retry_delay=0,
            retain_finished=retain_finished,
        )
        queues.append(queue)
        return EvaluationIntakeService(
            queue=queue,
            idempotency_store=idempotency_store,
            state_store=state_store,
            sync_wait_seconds=sync_wait_seconds,
        )

    yield factory
    for queue in queues:
        await queue.shutdown()


class TestSubmit:
    """Tests for EvaluationIntakeService.submit."""

    async def test_completes_within_sync_wait(self, make_intake) -> None:
        intake = make_intake()
        request_id = str(uuid.uuid4())

        outcome = await intake.submit("user-1", request_id, text="A typed answer")

        assert outcome.state == SubmissionState.COMPLETED
        assert outcome.request_id == request_id
        assert outcome.result is not None
        assert outcome.poll_url is None

    async def test_resubmission_returns_stored_result(self, make_intake) -> None:
        text_adapter = FakeTextAdapter()
        intake = make_intake(text_adapter=text_adapter)
        request_id = str(uuid.uuid4())
        first = await intake.submit("user-1", request_id, text="A typed answer")

        second = await intake.submit("user-1", request_id, text="A typed answer")

        assert second.state == SubmissionState.COMPLETED
        assert second.job_id == first.job_id
        assert second.result.id == first.result.id
        assert len(text_adapter.calls) == 1

    async def test_concurrent_duplicates_run_once(self, make_intake) -> None:
        """Duplicates join the first job instead of enqueueing their own."""
        text_adapter = FakeTextAdapter(delay=0.05)
        intake = make_intake(text_adapter=text_adapter)
        request_id = str(uuid.uuid4())

        outcomes = await asyncio.gather(
            *(intake.submit("user-1", request_id, text="A typed answer") for _ in range(5))
        )

        assert len(text_adapter.calls) == 1
        assert {o.job_id for o in outcomes} == {outcomes[0].job_id}
        assert {o.result.id for o in outcomes} == {outcomes[0].result.id}

    async def test_slow_job_is_reported_as_queued(self, make_intake) -> None:
        """The wait deadline passes and the job keeps running."""
        intake = make_intake(text_adapter=FakeTextAdapter(delay=0.2), sync_wait_seconds=0.01)
        request_id = str(uuid.uuid4())

        outcome = await intake.submit("user-1", request_id, text="A typed answer")

        assert outcome.state == SubmissionState.QUEUED
        assert outcome.poll_url == f"/api/evaluate/status/{outcome.job_id}"

        await intake.queue.wait_until_finished(outcome.job_id, timeout=2)
        view = await intake.poll("user-1", outcome.job_id)
        assert view.status == "completed"
        assert view.progress == 100
        assert view.result is not None

    @pytest.mark.parametrize("request_id", ["not-a-uuid", "", None])
    async def test_malformed_request_id(self, make_intake, request_id) -> None:
        intake = make_intake()

        with pytest.raises(EvaluationError) as exc_info:
            await intake.submit("user-1", request_id, text="A typed answer")

        assert exc_info.value.kind == ErrorKind.INVALID_REQUEST

    async def test_requires_text_or_audio(self, make_intake) -> None:
        intake = make_intake()

        with pytest.raises(EvaluationError) as exc_info:
            await intake.submit("user-1", str(uuid.uuid4()), text="  ", audio_url="")

        assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR

    async def test_failed_job_raises_recorded_error(self, make_intake) -> None:
        intake = make_intake(
            text_adapter=FakeTextAdapter(EvaluationError.service("OpenAI", "down"))
        )
        request_id = str(uuid.uuid4())

        with pytest.raises(EvaluationError) as exc_info:
            await intake.submit("user-1", request_id, text="A typed answer")

        assert exc_info.value.kind == ErrorKind.LLM_SERVICE_ERROR
        assert "job_id" in exc_info.value.details

        with pytest.raises(EvaluationError) as again:
            await intake.submit("user-1", request_id, text="A typed answer")
        assert again.value.kind == ErrorKind.LLM_SERVICE_ERROR

    async def test_failed_request_stays_failed_after_job_is_pruned(self, make_intake) -> None:
        text_adapter = FakeTextAdapter(EvaluationError.service("OpenAI", "down"))
        intake = make_intake(text_adapter=text_adapter, retain_finished=0)
        request_id = str(uuid.uuid4())
        with pytest.raises(EvaluationError):
            await intake.submit("user-1", request_id, text="A typed answer")
        calls = len(text_adapter.calls)

        with pytest.raises(EvaluationError) as exc_info:
            await intake.submit("user-1", request_id, text="A typed answer")

        assert exc_info.value.kind == ErrorKind.LLM_SERVICE_ERROR
        assert exc_info.value.details["request_id"] == request_id
        assert len(text_adapter.calls) == calls

    async def test_lost_job_is_queued_again(self, make_intake) -> None:
        intake = make_intake()
        request_id = str(uuid.uuid4())
        await intake.idempotency_store.claim(request_id, Claim("job-lost", "user-1"))
        await intake.state_store.save_status(
            EvaluationStatusEntity(
                id="job-lost",
                submission_id="sub-1",
                request_id=request_id,
                user_id="user-1",
                question_id="general",
            )
        )

        outcome = await intake.submit("user-1", request_id, text="A typed answer")

        assert outcome.state == SubmissionState.COMPLETED
        assert outcome.job_id == "job-lost"
        view = await intake.poll("user-1", "job-lost")
        assert view.status == "completed"

    async def test_other_callers_request_id_is_not_found(self, make_intake) -> None:
        intake = make_intake()
        request_id = str(uuid.uuid4())
        await intake.submit("alice", request_id, text="A typed answer")

        with pytest.raises(EvaluationError) as exc_info:
            await intake.submit("mallory", request_id, text="Anything")

        assert exc_info.value.kind == ErrorKind.NOT_FOUND
        assert exc_info.value.details == {
            "resource": "Evaluation request",
            "resource_id": request_id,
        }

    async def test_other_callers_running_request_is_not_joined(self, make_intake) -> None:
        intake = make_intake(
            text_adapter=FakeTextAdapter(delay=0.5), sync_wait_seconds=0.05
        )
        request_id = str(uuid.uuid4())
        first = await intake.submit("alice", request_id, text="A typed answer")
        assert first.state == SubmissionState.QUEUED

        with pytest.raises(EvaluationError) as exc_info:
            await intake.submit("mallory", request_id, text="Anything")

        assert exc_info.value.kind == ErrorKind.NOT_FOUND


class TestPoll:
    """Tests for EvaluationIntakeService.poll."""

    async def test_unknown_job_is_not_found(self, make_intake) -> None:
        intake = make_intake()

        with pytest.raises(EvaluationError) as exc_info:
            await intake.poll("user-1", "missing")

        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    async def test_other_callers_job_is_not_found(self, make_intake) -> None:
        intake = make_intake()
        outcome = await intake.submit("user-1", str(uuid.uuid4()), text="A typed answer")

        with pytest.raises(EvaluationError) as exc_info:
            await intake.poll("user-2", outcome.job_id)

        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    async def test_failed_job_reports_error(self, make_intake) -> None:
        intake = make_intake(
            text_adapter=FakeTextAdapter(EvaluationError.validation("Text too long"))
        )
        request_id = str(uuid.uuid4())
        with pytest.raises(EvaluationError):
            await intake.submit("user-1", request_id, text="A typed answer")
        job_id = (await intake.idempotency_store.get_claim(request_id)).job_id

        view = await intake.poll("user-1", job_id)

        assert view.status == "failed"
        assert view.error == {"code": "VALIDATION_ERROR", "message": "Text too long"}
