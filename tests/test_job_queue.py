"""Tests for the in-process job queue."""

import asyncio

import pytest

from drill_eval.domain.feedback import Feedback
from drill_eval.domain.submission import Submission
from drill_eval.exceptions import ErrorKind, EvaluationError
from drill_eval.services.job_queue import (
    EvaluationJob,
    InProcessJobQueue,
    JobNotFound,
    JobStatus,
    JobWaitTimeout,
)


def _job() -> EvaluationJob:
    return EvaluationJob(
        request_id="3fa85f64-5717-4562-b3fc-2c963f66afa6",
        submission=Submission(user_id="u", question_id="q", content="An answer"),
    )


def _feedback(job: EvaluationJob) -> Feedback:
    return Feedback(
        submission_id=job.submission.id,
        score=64,
        feedback="Reasonable answer, but light on specifics.",
        strengths=["Reasonable structure"],
        improvements=["Add specifics"],
        model="fake-model",
        processing_time_ms=1,
    )


@pytest.fixture
async def make_queue():
    queues: list[InProcessJobQueue] = []

    def factory(handler, **kwargs) -> InProcessJobQueue:
        kwargs.setdefault("retry_delay", 0)
        queue = InProcessJobQueue(handler, **kwargs)
        queues.append(queue)
        return queue

    yield factory
    for queue in queues:
        await queue.shutdown()


class TestInProcessJobQueue:
    """Tests for InProcessJobQueue."""

    async def test_completed_job_outcome(self, make_queue) -> None:
        async def handler(job: EvaluationJob) -> Feedback:
            return _feedback(job)

        queue = make_queue(handler)
        job = _job()

        job_id = await queue.enqueue(job)
        outcome = await queue.wait_until_finished(job_id, timeout=1)

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.result.score == 64
        assert queue.get(job_id).attempts == 1

    async def test_wait_timeout_does_not_cancel_job(self, make_queue) -> None:
        """The waiter gives up, the job keeps running to completion."""
        release = asyncio.Event()

        async def handler(job: EvaluationJob) -> Feedback:
            await release.wait()
            return _feedback(job)

        queue = make_queue(handler)
        job_id = await queue.enqueue(_job())

        with pytest.raises(JobWaitTimeout):
            await queue.wait_until_finished(job_id, timeout=0.05)

        release.set()
        outcome = await queue.wait_until_finished(job_id, timeout=1)
        assert outcome.status == JobStatus.COMPLETED

    async def test_crashed_run_is_retried(self, make_queue) -> None:
        """Unexpected exceptions re-run the job (at-least-once)."""
        runs = 0

        async def handler(job: EvaluationJob) -> Feedback:
            nonlocal runs
            runs += 1
            if runs < 3:
                raise RuntimeError("worker crashed")
            return _feedback(job)

        queue = make_queue(handler, max_attempts=3)
        job_id = await queue.enqueue(_job())

        outcome = await queue.wait_until_finished(job_id, timeout=1)

        assert outcome.status == JobStatus.COMPLETED
        assert runs == 3

    async def test_crash_after_max_attempts_fails(self, make_queue) -> None:
        async def handler(job: EvaluationJob) -> Feedback:
            raise RuntimeError("always crashes")

        queue = make_queue(handler, max_attempts=2)
        job_id = await queue.enqueue(_job())

        outcome = await queue.wait_until_finished(job_id, timeout=1)

        assert outcome.status == JobStatus.FAILED
        assert outcome.error.kind == ErrorKind.INTERNAL_ERROR
        record = queue.get(job_id)
        assert record.attempts == 2
        assert "always crashes" in record.failed_reason

    async def test_evaluation_error_is_terminal(self, make_queue) -> None:
        """Normalized failures are recorded once and not re-run."""
        runs = 0

        async def handler(job: EvaluationJob) -> Feedback:
            nonlocal runs
            runs += 1
            raise EvaluationError.service("OpenAI", "down")

        queue = make_queue(handler, max_attempts=3)
        job_id = await queue.enqueue(_job())

        outcome = await queue.wait_until_finished(job_id, timeout=1)

        assert outcome.status == JobStatus.FAILED
        assert outcome.error.kind == ErrorKind.LLM_SERVICE_ERROR
        assert runs == 1

    async def test_enqueue_is_idempotent_per_job_id(self, make_queue) -> None:
        runs = 0

        async def handler(job: EvaluationJob) -> Feedback:
            nonlocal runs
            runs += 1
            return _feedback(job)

        queue = make_queue(handler)
        job = _job()

        await queue.enqueue(job)
        await queue.enqueue(job)
        await queue.wait_until_finished(job.id, timeout=1)

        assert runs == 1

    async def test_concurrent_waiters_share_one_run(self, make_queue) -> None:
        runs = 0

        async def handler(job: EvaluationJob) -> Feedback:
            nonlocal runs
            runs += 1
            await asyncio.sleep(0.01)
            return _feedback(job)

        queue = make_queue(handler)
        job_id = await queue.enqueue(_job())

        outcomes = await asyncio.gather(
            *(queue.wait_until_finished(job_id, timeout=1) for _ in range(5))
        )

        assert runs == 1
        assert {o.status for o in outcomes} == {JobStatus.COMPLETED}

    async def test_wait_on_finished_job_returns_immediately(self, make_queue) -> None:
        async def handler(job: EvaluationJob) -> Feedback:
            return _feedback(job)

        queue = make_queue(handler)
        job_id = await queue.enqueue(_job())
        await queue.wait_until_finished(job_id, timeout=1)

        outcome = await queue.wait_until_finished(job_id, timeout=0)

        assert outcome.status == JobStatus.COMPLETED

    async def test_unknown_job(self, make_queue) -> None:
        async def handler(job: EvaluationJob) -> Feedback:
            return _feedback(job)

        queue = make_queue(handler)

        with pytest.raises(JobNotFound):
            await queue.wait_until_finished("missing", timeout=0.1)

    async def test_jobs_run_concurrently(self, make_queue) -> None:
        active = 0
        peak = 0

        async def handler(job: EvaluationJob) -> Feedback:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1
            return _feedback(job)

        queue = make_queue(handler, concurrency=3)
        job_ids = [await queue.enqueue(_job()) for _ in range(3)]

        await asyncio.gather(*(queue.wait_until_finished(j, timeout=1) for j in job_ids))

        assert peak == 3
