"""Agent CRUD, staking, wallet and reputation endpoints."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from agent_settlement.auth.rate_limit import check_rate_limit
from agent_settlement.database import get_db
from agent_settlement.schemas.agent import (
    AgentCreate,
    AgentResponse,
    AgentUpdate,
    ReputationResponse,
    StakeActionResponse,
    StakeRequest,
    WalletResponse,
)
from agent_settlement.schemas.feedback import FeedbackResponse, ValidationResponse
from agent_settlement.services import agent as agent_service
from agent_settlement.services import directory as directory_service
from agent_settlement.services import reputation as reputation_service
from agent_settlement.services import staking as staking_service

router = APIRouter(prefix="/agents", tags=["agents"])


@router.post("", response_model=AgentResponse, status_code=201, dependencies=[Depends(check_rate_limit)])
async def register_agent(
    data: AgentCreate,
    db: AsyncSession = Depends(get_db),
) -> AgentResponse:
    """Register a new agent. Inactive until its minimum stake is deposited."""
    agent = await agent_service.register_agent(db, data)
    return AgentResponse.model_validate(agent)


@router.get("/{agent_id}", response_model=AgentResponse, dependencies=[Depends(check_rate_limit)])
async def get_agent(
    agent_id: str,
    db: AsyncSession = Depends(get_db),
) -> AgentResponse:
    agent = await agent_service.get_agent(db, directory_service.parse_agent_id(agent_id))
    return AgentResponse.model_validate(agent)


@router.patch("/{agent_id}", response_model=AgentResponse, dependencies=[Depends(check_rate_limit)])
async def update_agent(
    agent_id: str,
    data: AgentUpdate,
    db: AsyncSession = Depends(get_db),
) -> AgentResponse:
    """Update wallet, price, metadata or the active flag."""
    agent = await agent_service.update_agent(db, directory_service.parse_agent_id(agent_id), data)
    return AgentResponse.model_validate(agent)


@router.post("/{agent_id}/stake", response_model=AgentResponse, dependencies=[Depends(check_rate_limit)])
async def stake_agent(
    agent_id: str,
    data: StakeRequest,
    db: AsyncSession = Depends(get_db),
) -> AgentResponse:
    """Record a stake deposit; activates the agent at its minimum stake."""
    agent = await agent_service.stake_agent(
        db, directory_service.parse_agent_id(agent_id), data.amount, data.tx_hash,
    )
    return AgentResponse.model_validate(agent)


@router.get("/{agent_id}/wallet", response_model=WalletResponse, dependencies=[Depends(check_rate_limit)])
async def get_wallet(
    agent_id: str,
    db: AsyncSession = Depends(get_db),
) -> WalletResponse:
    """Payout wallet of an active, configured agent."""
    wallet = await directory_service.resolve_wallet(db, agent_id)
    return WalletResponse(agent_id=agent_id.strip(), wallet_address=wallet)


@router.get(
    "/{agent_id}/reputation",
    response_model=ReputationResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def get_reputation(
    agent_id: str,
    db: AsyncSession = Depends(get_db),
) -> ReputationResponse:
    """Reputation score recomputed from stored events, with a summary."""
    return await reputation_service.get_reputation(db, directory_service.parse_agent_id(agent_id))


@router.get(
    "/{agent_id}/feedback",
    response_model=list[FeedbackResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_agent_feedback(
    agent_id: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> list[FeedbackResponse]:
    feedback = await reputation_service.get_feedback_for_agent(
        db, directory_service.parse_agent_id(agent_id), limit, offset,
    )
    return [FeedbackResponse.model_validate(f) for f in feedback]


@router.get(
    "/{agent_id}/validations",
    response_model=list[ValidationResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_agent_validations(
    agent_id: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> list[ValidationResponse]:
    validations = await reputation_service.get_validations_for_agent(
        db, directory_service.parse_agent_id(agent_id), limit, offset,
    )
    return [ValidationResponse.model_validate(v) for v in validations]


@router.get(
    "/{agent_id}/stake-actions",
    response_model=list[StakeActionResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_agent_stake_actions(
    agent_id: str,
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> list[StakeActionResponse]:
    """Slash and refund requests sent, or queued, for this agent. Newest first."""
    actions = await staking_service.get_stake_actions(
        db, directory_service.parse_agent_id(agent_id), limit,
    )
    return [StakeActionResponse.model_validate(a) for a in actions]
