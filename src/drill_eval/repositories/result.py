"""Repository for stored evaluation results and job claims."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from drill_eval.domain.claim import Claim
from drill_eval.domain.feedback import Feedback
from drill_eval.models.evaluation import EvaluationClaimRecord, EvaluationResultRecord


class ResultRepository:
    """Handle feedback persistence keyed by request id."""

    @staticmethod
    async def get_by_request_id(
        session: AsyncSession, request_id: str
    ) -> Feedback | None:
        """Retrieve stored feedback for a request id if it exists."""
        result = await session.execute(
            select(EvaluationResultRecord).where(
                EvaluationResultRecord.request_id == request_id
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            return None
        return Feedback(
            id=record.feedback_id,
            submission_id=record.submission_id,
            score=record.score,
            feedback=record.feedback,
            strengths=list(record.strengths),
            improvements=list(record.improvements),
            model=record.model,
            processing_time_ms=record.processing_time_ms,
            generated_at=record.generated_at,
        )

    @staticmethod
    async def create(
        session: AsyncSession, request_id: str, feedback: Feedback
    ) -> None:
        """Insert feedback; raises IntegrityError if the request id exists."""
        session.add(
            EvaluationResultRecord(
                request_id=request_id,
                feedback_id=feedback.id,
                submission_id=feedback.submission_id,
                score=feedback.score,
                feedback=feedback.feedback,
                strengths=list(feedback.strengths),
                improvements=list(feedback.improvements),
                model=feedback.model,
                processing_time_ms=feedback.processing_time_ms,
                generated_at=feedback.generated_at,
            )
        )
        await session.flush()


class ClaimRepository:
    """Handle request id claims by a job and its caller."""

    @staticmethod
    async def get(session: AsyncSession, request_id: str) -> Claim | None:
        result = await session.execute(
            select(EvaluationClaimRecord).where(
                EvaluationClaimRecord.request_id == request_id
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            return None
        return Claim(job_id=record.job_id, user_id=record.user_id)

    @staticmethod
    async def create(session: AsyncSession, request_id: str, claim: Claim) -> None:
        """Insert a claim; raises IntegrityError if the request id is claimed."""
        session.add(
            EvaluationClaimRecord(
                request_id=request_id, job_id=claim.job_id, user_id=claim.user_id
            )
        )
        await session.flush()
