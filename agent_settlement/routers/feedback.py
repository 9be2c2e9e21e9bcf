"""Feedback and validator attestation endpoints."""

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from agent_settlement.auth.rate_limit import check_rate_limit
from agent_settlement.database import get_db
from agent_settlement.schemas.feedback import (
    FeedbackCreate,
    FeedbackSubmitResponse,
    ValidationCreate,
    ValidationResponse,
)
from agent_settlement.services import reputation as reputation_service

router = APIRouter(tags=["reputation"])


@router.post(
    "/feedback",
    response_model=FeedbackSubmitResponse,
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def submit_feedback(
    data: FeedbackCreate,
    response: Response,
    db: AsyncSession = Depends(get_db),
) -> FeedbackSubmitResponse:
    """Submit a review backed by a settled payment.

    201 when recorded, 200 for a replayed feedback id, 409 when the payment
    proof does not authorize this review.
    """
    result = await reputation_service.submit_feedback(
        db,
        agent_id=data.agent_id,
        task_id=data.task_id,
        reviewer=data.reviewer,
        score=data.score,
        comment=data.comment,
        payment_proof=data.payment_proof,
        feedback_id=data.feedback_id,
    )
    if not result.accepted:
        response.status_code = 409
    elif result.duplicate:
        response.status_code = 200

    score = None
    if result.accepted:
        score = await reputation_service.current_score(db, data.agent_id)
    return FeedbackSubmitResponse(
        accepted=result.accepted,
        duplicate=result.duplicate,
        reason=result.reason,
        feedback_id=result.feedback_id,
        reputation_score=score,
    )


@router.post(
    "/validations",
    response_model=ValidationResponse,
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def record_validation(
    data: ValidationCreate,
    response: Response,
    db: AsyncSession = Depends(get_db),
) -> ValidationResponse:
    """Record a validator's attestation for a task. Repeats return the first one."""
    validation, created = await reputation_service.record_validation(
        db, data.agent_id, data.task_id, data.validator, data.is_valid, data.comments,
    )
    if not created:
        response.status_code = 200
    return ValidationResponse.model_validate(validation)
