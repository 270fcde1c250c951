"""Repository for evaluation request and status records."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from drill_eval.domain.evaluation_request import EvaluationRequest, RequestStatus
from drill_eval.domain.status import EvaluationPhase, EvaluationStatusEntity
from drill_eval.models.evaluation import EvaluationRequestRecord, EvaluationStatusRecord


class RequestRepository:
    """Handle evaluation request persistence."""

    @staticmethod
    async def get_by_id(
        session: AsyncSession, request_id: str
    ) -> EvaluationRequest | None:
        result = await session.execute(
            select(EvaluationRequestRecord).where(EvaluationRequestRecord.id == request_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            return None
        return EvaluationRequest(
            id=record.id,
            submission_id=record.submission_id,
            requested_at=record.requested_at,
            retry_count=record.retry_count,
            status=RequestStatus(record.status),
            error_code=record.error_code,
            error_message=record.error_message,
        )

    @staticmethod
    async def save(session: AsyncSession, request: EvaluationRequest) -> None:
        """Insert or update the request row."""
        await session.merge(
            EvaluationRequestRecord(
                id=request.id,
                submission_id=request.submission_id,
                requested_at=request.requested_at,
                retry_count=request.retry_count,
                status=request.status.value,
                error_code=request.error_code,
                error_message=request.error_message,
            )
        )
        await session.flush()


class StatusRepository:
    """Handle evaluation status persistence."""

    @staticmethod
    async def get_by_id(
        session: AsyncSession, status_id: str
    ) -> EvaluationStatusEntity | None:
        result = await session.execute(
            select(EvaluationStatusRecord).where(EvaluationStatusRecord.id == status_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            return None
        return EvaluationStatusEntity(
            id=record.id,
            submission_id=record.submission_id,
            request_id=record.request_id,
            user_id=record.user_id,
            question_id=record.question_id,
            has_audio=record.has_audio,
            status=EvaluationPhase(record.status),
            progress=record.progress,
            message=record.message,
            error_code=record.error_code,
            error_message=record.error_message,
            updated_at=record.updated_at,
        )

    @staticmethod
    async def save(session: AsyncSession, status: EvaluationStatusEntity) -> None:
        """Insert or update the status row."""
        await session.merge(
            EvaluationStatusRecord(
                id=status.id,
                submission_id=status.submission_id,
                request_id=status.request_id,
                user_id=status.user_id,
                question_id=status.question_id,
                has_audio=status.has_audio,
                status=status.status.value,
                progress=status.progress,
                message=status.message,
                error_code=status.error_code,
                error_message=status.error_message,
                updated_at=status.updated_at,
            )
        )
        await session.flush()
