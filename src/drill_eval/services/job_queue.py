"""In-process job queue with at-least-once execution and bounded waits."""

import asyncio
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Protocol

from loguru import logger

from drill_eval.domain.feedback import Feedback
from drill_eval.domain.submission import Submission
from drill_eval.exceptions import ErrorKind, EvaluationError


class JobStatus(StrEnum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class EvaluationJob:
    """Everything a worker needs to (re-)run one evaluation."""

    request_id: str
    submission: Submission
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class JobRecord:
    job: EvaluationJob
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    result: Feedback | None = None
    error: EvaluationError | None = None
    failed_reason: str | None = None
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None


@dataclass(frozen=True)
class JobOutcome:
    job_id: str
    status: JobStatus
    result: Feedback | None = None
    error: EvaluationError | None = None


class JobWaitTimeout(Exception):
    """The job did not finish before the wait deadline; it keeps running."""

    def __init__(self, job_id: str, timeout: float) -> None:
        self.job_id = job_id
        self.timeout = timeout
        super().__init__(f"Job {job_id} did not finish within {timeout}s")


class JobNotFound(LookupError):
    """The queue has no record of the job."""


JobHandler = Callable[[EvaluationJob], Awaitable[Feedback]]


class JobQueue(Protocol):
    async def enqueue(self, job: EvaluationJob) -> str: ...

    async def wait_until_finished(self, job_id: str, timeout: float) -> JobOutcome: ...

    def get(self, job_id: str) -> JobRecord | None: ...


class InProcessJobQueue:
    """Run evaluation jobs on a fixed pool of asyncio worker tasks.

    A handler that raises ``EvaluationError`` has already recorded a
    normalized failure, so the job ends as failed. Any other exception is
    treated as a crashed run and the job is queued again until
    ``max_attempts`` runs have been made.
    """

    def __init__(
        self,
        handler: JobHandler,
        concurrency: int = 4,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        retain_finished: int = 1000,
    ) -> None:
        self.handler = handler
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.retain_finished = retain_finished
        self._jobs: dict[str, JobRecord] = {}
        self._waiters: dict[str, asyncio.Future[JobOutcome]] = {}
        self._finished: deque[str] = deque()
        self._pending: asyncio.Queue[str] | None = None
        self._workers: list[asyncio.Task] = []
        self._requeues: set[asyncio.Task] = set()

    @property
    def started(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self.started:
            return
        self._pending = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"evaluation-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("Job queue started", concurrency=self.concurrency)

    async def shutdown(self) -> None:
        tasks = [*self._workers, *self._requeues]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._requeues.clear()
        logger.info("Job queue stopped")

    async def enqueue(self, job: EvaluationJob) -> str:
        if job.id in self._jobs:
            return job.id
        await self.start()
        self._jobs[job.id] = JobRecord(job=job)
        self._waiters[job.id] = asyncio.get_running_loop().create_future()
        self._pending.put_nowait(job.id)
        logger.info("Job enqueued", job_id=job.id, request_id=job.request_id)
        return job.id

    def get(self, job_id: str) -> JobRecord | None:
        return self._jobs.get(job_id)

    async def wait_until_finished(self, job_id: str, timeout: float) -> JobOutcome:
        """Observe a job until it finishes or ``timeout`` seconds pass.

        Raises:
            JobNotFound: The job is unknown to this queue.
            JobWaitTimeout: The deadline passed; the job is not cancelled.
        """
        waiter = self._waiters.get(job_id)
        if waiter is None:
            record = self._jobs.get(job_id)
            if record is None:
                raise JobNotFound(job_id)
            return self._outcome(record)
        try:
            return await asyncio.wait_for(asyncio.shield(waiter), timeout)
        except TimeoutError as exc:
            raise JobWaitTimeout(job_id, timeout) from exc

    async def _worker(self, index: int) -> None:
        while True:
            job_id = await self._pending.get()
            try:
                await self._run(job_id)
            except Exception:
                logger.exception("Worker crashed while running job", worker=index, job_id=job_id)
            finally:
                self._pending.task_done()

    async def _run(self, job_id: str) -> None:
        record = self._jobs[job_id]
        record.status = JobStatus.ACTIVE
        record.attempts += 1
        logger.info("Job started", job_id=job_id, attempt=record.attempts)

        try:
            result = await self.handler(record.job)
        except EvaluationError as exc:
            record.error = exc
            record.failed_reason = exc.message
            self._finish(record, JobStatus.FAILED)
            return
        except Exception as exc:
            record.failed_reason = f"{type(exc).__name__}: {exc}"
            if record.attempts < self.max_attempts:
                logger.warning(
                    "Job run crashed, queueing again",
                    job_id=job_id,
                    attempt=record.attempts,
                    error=record.failed_reason,
                )
                record.status = JobStatus.QUEUED
                self._requeue_later(job_id)
                return
            logger.error("Job failed after all runs", job_id=job_id, error=record.failed_reason)
            record.error = EvaluationError(
                ErrorKind.INTERNAL_ERROR,
                "Evaluation could not be completed",
                details={"attempts": record.attempts},
            )
            self._finish(record, JobStatus.FAILED)
            return

        record.result = result
        self._finish(record, JobStatus.COMPLETED)

    def _requeue_later(self, job_id: str) -> None:
        async def requeue() -> None:
            await asyncio.sleep(self.retry_delay)
            self._pending.put_nowait(job_id)

        task = asyncio.create_task(requeue())
        self._requeues.add(task)
        task.add_done_callback(self._requeues.discard)

    def _finish(self, record: JobRecord, status: JobStatus) -> None:
        record.status = status
        record.finished_at = datetime.now(UTC)
        logger.info("Job finished", job_id=record.job.id, status=status.value)

        waiter = self._waiters.pop(record.job.id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(self._outcome(record))

        self._finished.append(record.job.id)
        while len(self._finished) > self.retain_finished:
            self._jobs.pop(self._finished.popleft(), None)

    @staticmethod
    def _outcome(record: JobRecord) -> JobOutcome:
        return JobOutcome(
            job_id=record.job.id,
            status=record.status,
            result=record.result,
            error=record.error,
        )
