"""Dispute and validator vote endpoints."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from agent_settlement.auth.rate_limit import check_rate_limit
from agent_settlement.config import settings
from agent_settlement.database import get_db
from agent_settlement.models.dispute import DisputeStatus
from agent_settlement.schemas.dispute import (
    DisputeCreate,
    DisputeResponse,
    DisputeVoteResponse,
    VoteCreate,
    VoteResultResponse,
)
from agent_settlement.services import dispute as dispute_service

router = APIRouter(prefix="/disputes", tags=["disputes"])


@router.post("", response_model=DisputeResponse, status_code=201, dependencies=[Depends(check_rate_limit)])
async def raise_dispute(
    data: DisputeCreate,
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    """Contest a completed task. Only its requester may, once."""
    dispute = await dispute_service.raise_dispute(db, data.task_id, data.reason, data.raised_by)
    return DisputeResponse.model_validate(dispute)


@router.get("", response_model=list[DisputeResponse], dependencies=[Depends(check_rate_limit)])
async def list_disputes(
    status: DisputeStatus | None = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> list[DisputeResponse]:
    disputes = await dispute_service.get_disputes(db, status, limit, offset)
    return [DisputeResponse.model_validate(d) for d in disputes]


@router.get("/{dispute_id}", response_model=DisputeResponse, dependencies=[Depends(check_rate_limit)])
async def get_dispute(
    dispute_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    dispute = await dispute_service.get_dispute(db, dispute_id)
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/{dispute_id}/votes",
    response_model=VoteResultResponse,
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def vote_on_dispute(
    dispute_id: uuid.UUID,
    data: VoteCreate,
    db: AsyncSession = Depends(get_db),
) -> VoteResultResponse:
    """Cast a validator vote. The first vote per validator is binding."""
    result = await dispute_service.vote_on_dispute(
        db, dispute_id, data.validator, data.approve_refund, data.comment,
    )
    return VoteResultResponse(
        dispute_id=dispute_id,
        accepted=result.accepted,
        resolved=result.resolved,
        outcome=result.outcome.value if result.outcome else None,
        votes_cast=result.votes_cast,
        quorum=settings.dispute_quorum,
    )


@router.get(
    "/{dispute_id}/votes",
    response_model=list[DisputeVoteResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_dispute_votes(
    dispute_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> list[DisputeVoteResponse]:
    votes = await dispute_service.get_dispute_votes(db, dispute_id)
    return [DisputeVoteResponse.model_validate(v) for v in votes]
