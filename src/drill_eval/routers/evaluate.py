"""Answer evaluation endpoints."""

from fastapi import APIRouter, Depends, Response, status
from loguru import logger

from drill_eval.auth import Caller, get_current_caller
from drill_eval.dependencies import get_intake_service
from drill_eval.schemas.common import ErrorResponse
from drill_eval.schemas.evaluation import (
    EvaluateRequest,
    EvaluateResponse,
    EvaluationStatusResponse,
)
from drill_eval.services.intake import EvaluationIntakeService, SubmissionState

router = APIRouter(prefix="/evaluate", tags=["Evaluation"])


@router.post(
    "",
    response_model=EvaluateResponse,
    response_model_exclude_none=True,
    summary="Evaluate an answer",
    description=(
        "Submit a text or audio answer. Returns the feedback when it is ready "
        "within the synchronous wait, otherwise 202 with a poll URL. Requests "
        "are idempotent on requestId."
    ),
    responses={
        202: {"model": EvaluateResponse, "description": "Evaluation queued"},
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def evaluate_answer(
    payload: EvaluateRequest,
    response: Response,
    caller: Caller = Depends(get_current_caller),
    intake: EvaluationIntakeService = Depends(get_intake_service),
) -> EvaluateResponse:
    """Evaluate an answer at most once per request id."""
    logger.info(
        "Evaluation requested",
        user_id=caller.user_id,
        request_id=payload.request_id,
        has_text=bool(payload.text),
        has_audio=bool(payload.audio_url),
    )

    outcome = await intake.submit(
        user_id=caller.user_id,
        request_id=payload.request_id,
        text=payload.text,
        audio_url=payload.audio_url,
        question_id=payload.question_id,
        metadata=payload.metadata,
    )
    if outcome.state == SubmissionState.QUEUED:
        response.status_code = status.HTTP_202_ACCEPTED

    return EvaluateResponse.from_outcome(outcome)


@router.get(
    "/status/{job_id}",
    response_model=EvaluationStatusResponse,
    response_model_exclude_none=True,
    summary="Get evaluation status",
    description="Poll progress of a queued evaluation; includes the feedback once completed.",
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_evaluation_status(
    job_id: str,
    caller: Caller = Depends(get_current_caller),
    intake: EvaluationIntakeService = Depends(get_intake_service),
) -> EvaluationStatusResponse:
    """Return the status of an evaluation job owned by the caller."""
    view = await intake.poll(caller.user_id, job_id)
    return EvaluationStatusResponse.from_view(view)
