"""Agent business logic."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agent_settlement.config import settings
from agent_settlement.errors import InvalidState, NotFound
from agent_settlement.models.agent import Agent
from agent_settlement.schemas.agent import AgentCreate, AgentUpdate
from agent_settlement.services import staking

logger = logging.getLogger(__name__)

# Fields an update may explicitly reset to null
_CLEARABLE = {"description", "endpoint_url", "price_per_request", "wallet_address"}


async def register_agent(db: AsyncSession, data: AgentCreate) -> Agent:
    """Register a new agent. It stays inactive until staked to its minimum."""
    existing = await db.execute(select(Agent).where(Agent.agent_id == data.agent_id))
    if existing.scalar_one_or_none() is not None:
        raise InvalidState("Agent id already registered")

    minimum_stake = data.minimum_stake
    if minimum_stake is None:
        minimum_stake = settings.default_minimum_stake

    agent = Agent(
        agent_id=data.agent_id,
        name=data.name,
        service_type=data.service_type,
        description=data.description,
        endpoint_url=data.endpoint_url,
        wallet_address=data.wallet_address or "",
        price_per_request=data.price_per_request,
        minimum_stake=minimum_stake,
        active=minimum_stake == 0,
    )
    db.add(agent)
    await db.commit()
    await db.refresh(agent)
    logger.info("Agent %s registered (active=%s)", agent.agent_id, agent.active)
    return agent


async def get_agent(db: AsyncSession, agent_id: str) -> Agent:
    """Get agent by ID."""
    result = await db.execute(select(Agent).where(Agent.agent_id == agent_id))
    agent = result.scalar_one_or_none()
    if agent is None:
        raise NotFound("Agent not found")
    return agent


async def update_agent(db: AsyncSession, agent_id: str, data: AgentUpdate) -> Agent:
    """Update an agent's mutable fields.

    Reactivation is refused while the effective stake is below the minimum;
    deactivation is always allowed.
    """
    agent = await staking.lock_agent(db, agent_id)
    if agent is None:
        raise NotFound("Agent not found")

    update_data = {
        field: value
        for field, value in data.model_dump(exclude_unset=True).items()
        if value is not None or field in _CLEARABLE
    }
    if "wallet_address" in update_data and update_data["wallet_address"] is None:
        update_data["wallet_address"] = ""
    if update_data.get("active") and agent.effective_stake < agent.minimum_stake:
        raise InvalidState("Agent cannot be activated below its minimum stake")

    for field, value in update_data.items():
        setattr(agent, field, value)

    await db.commit()
    await db.refresh(agent)
    logger.info("Agent %s updated: %s", agent_id, sorted(update_data))
    return agent


async def stake_agent(
    db: AsyncSession, agent_id: str, amount: int, tx_hash: str | None = None
) -> Agent:
    """Record stake deposited for an agent. Uses SELECT FOR UPDATE."""
    agent = await staking.lock_agent(db, agent_id)
    if agent is None:
        raise NotFound("Agent not found")

    staking.apply_stake(agent, amount, tx_hash)
    await db.commit()
    await db.refresh(agent)
    logger.info(
        "Agent %s staked %s: total=%s effective=%s",
        agent_id, amount, agent.staked_amount, agent.effective_stake,
    )
    return agent
