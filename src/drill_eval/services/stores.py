"""Idempotency/result and evaluation state stores.

Each store has an in-process implementation (lock-protected dictionaries)
and a SQL implementation for deployments with more than one worker process.
"""

import copy
import threading
from typing import Protocol

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from drill_eval.domain.claim import Claim
from drill_eval.domain.evaluation_request import EvaluationRequest
from drill_eval.domain.feedback import Feedback
from drill_eval.domain.status import EvaluationStatusEntity
from drill_eval.repositories.result import ClaimRepository, ResultRepository
from drill_eval.repositories.state import RequestRepository, StatusRepository


class IdempotencyStore(Protocol):
    """Map from caller request id to result and owning job."""

    async def get(self, request_id: str) -> Feedback | None: ...

    async def put(self, request_id: str, feedback: Feedback) -> Feedback:
        """Store feedback unless one exists; return the stored feedback."""
        ...

    async def claim(self, request_id: str, claim: Claim) -> Claim:
        """Bind ``claim`` to ``request_id`` unless bound; return the owning claim."""
        ...

    async def get_claim(self, request_id: str) -> Claim | None: ...


class EvaluationStateStore(Protocol):
    """Persistence for evaluation requests and polling statuses."""

    async def get_request(self, request_id: str) -> EvaluationRequest | None: ...

    async def save_request(self, request: EvaluationRequest) -> None: ...

    async def get_status(self, status_id: str) -> EvaluationStatusEntity | None: ...

    async def save_status(self, status: EvaluationStatusEntity) -> None: ...


class InMemoryIdempotencyStore:
    """Process-local idempotency store."""

    def __init__(self) -> None:
        self._results: dict[str, Feedback] = {}
        self._claims: dict[str, Claim] = {}
        self._lock = threading.Lock()

    async def get(self, request_id: str) -> Feedback | None:
        with self._lock:
            return self._results.get(request_id)

    async def put(self, request_id: str, feedback: Feedback) -> Feedback:
        with self._lock:
            return self._results.setdefault(request_id, feedback)

    async def claim(self, request_id: str, claim: Claim) -> Claim:
        with self._lock:
            return self._claims.setdefault(request_id, claim)

    async def get_claim(self, request_id: str) -> Claim | None:
        with self._lock:
            return self._claims.get(request_id)


class InMemoryEvaluationStateStore:
    """Process-local request/status store; returns copies, never live objects."""

    def __init__(self) -> None:
        self._requests: dict[str, EvaluationRequest] = {}
        self._statuses: dict[str, EvaluationStatusEntity] = {}
        self._lock = threading.Lock()

    async def get_request(self, request_id: str) -> EvaluationRequest | None:
        with self._lock:
            request = self._requests.get(request_id)
            return copy.deepcopy(request) if request else None

    async def save_request(self, request: EvaluationRequest) -> None:
        with self._lock:
            self._requests[request.id] = copy.deepcopy(request)

    async def get_status(self, status_id: str) -> EvaluationStatusEntity | None:
        with self._lock:
            status = self._statuses.get(status_id)
            return copy.deepcopy(status) if status else None

    async def save_status(self, status: EvaluationStatusEntity) -> None:
        with self._lock:
            self._statuses[status.id] = copy.deepcopy(status)


class SqlIdempotencyStore:
    """Idempotency store backed by the evaluation tables.

    Store-if-absent relies on primary keys: a losing insert raises
    ``IntegrityError`` and the existing row is read back instead.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get(self, request_id: str) -> Feedback | None:
        async with self.session_factory() as session:
            return await ResultRepository.get_by_request_id(session, request_id)

    async def put(self, request_id: str, feedback: Feedback) -> Feedback:
        async with self.session_factory() as session:
            try:
                await ResultRepository.create(session, request_id, feedback)
                await session.commit()
                return feedback
            except IntegrityError:
                await session.rollback()
                logger.info("Result already stored", request_id=request_id)

        existing = await self.get(request_id)
        if existing is None:
            raise RuntimeError(f"Result for request {request_id} vanished after conflict")
        return existing

    async def claim(self, request_id: str, claim: Claim) -> Claim:
        async with self.session_factory() as session:
            try:
                await ClaimRepository.create(session, request_id, claim)
                await session.commit()
                return claim
            except IntegrityError:
                await session.rollback()

        owner = await self.get_claim(request_id)
        if owner is None:
            raise RuntimeError(f"Claim for request {request_id} vanished after conflict")
        return owner

    async def get_claim(self, request_id: str) -> Claim | None:
        async with self.session_factory() as session:
            return await ClaimRepository.get(session, request_id)


class SqlEvaluationStateStore:
    """Request/status store backed by the evaluation tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get_request(self, request_id: str) -> EvaluationRequest | None:
        async with self.session_factory() as session:
            return await RequestRepository.get_by_id(session, request_id)

    async def save_request(self, request: EvaluationRequest) -> None:
        async with self.session_factory() as session:
            await RequestRepository.save(session, request)
            await session.commit()

    async def get_status(self, status_id: str) -> EvaluationStatusEntity | None:
        async with self.session_factory() as session:
            return await StatusRepository.get_by_id(session, status_id)

    async def save_status(self, status: EvaluationStatusEntity) -> None:
        async with self.session_factory() as session:
            await StatusRepository.save(session, status)
            await session.commit()
