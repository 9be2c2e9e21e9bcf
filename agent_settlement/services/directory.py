"""Agent directory: which wallet and which price govern a request to an agent."""

import logging
import re
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agent_settlement.config import settings
from agent_settlement.errors import Inactive, MalformedIdentifier, MissingIdentifier, NotFound, Unconfigured
from agent_settlement.models.agent import Agent

logger = logging.getLogger(__name__)

AGENT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


@dataclass(frozen=True)
class Route:
    agent_id: str
    wallet_address: str
    price: int


def parse_agent_id(raw: str | None) -> str:
    """Validate an agent id before it reaches the database."""
    if raw is None or not raw.strip():
        raise MissingIdentifier()
    agent_id = raw.strip()
    if not AGENT_ID_PATTERN.match(agent_id):
        raise MalformedIdentifier()
    return agent_id


async def _load(db: AsyncSession, agent_id: str) -> Agent:
    result = await db.execute(select(Agent).where(Agent.agent_id == agent_id))
    agent = result.scalar_one_or_none()
    if agent is None:
        raise NotFound(f"Agent {agent_id} not found")
    return agent


def _payable_wallet(agent: Agent) -> str:
    if not agent.active:
        raise Inactive(f"Agent {agent.agent_id} is currently inactive")
    if not agent.wallet_address:
        raise Unconfigured(f"Agent {agent.agent_id} has no wallet configured")
    return agent.wallet_address


async def resolve_wallet(db: AsyncSession, raw_agent_id: str | None) -> str:
    """Payout wallet of an active agent."""
    agent = await _load(db, parse_agent_id(raw_agent_id))
    return _payable_wallet(agent)


async def resolve_price(db: AsyncSession, raw_agent_id: str | None) -> int:
    """Price for a request, in the stablecoin's smallest unit.

    The platform default applies when no agent is named, when the named agent
    is unknown, or when it sets no price. Malformed ids are still rejected.
    """
    if raw_agent_id is None or not raw_agent_id.strip():
        return settings.default_price_per_request
    agent_id = parse_agent_id(raw_agent_id)
    result = await db.execute(select(Agent.price_per_request).where(Agent.agent_id == agent_id))
    price = result.scalar_one_or_none()
    if price is None:
        logger.debug("No price for agent %s, using the default", agent_id)
        return settings.default_price_per_request
    return price


async def resolve_route(db: AsyncSession, raw_agent_id: str | None) -> Route:
    """Wallet and price together, from a single read of the agent."""
    agent = await _load(db, parse_agent_id(raw_agent_id))
    wallet = _payable_wallet(agent)
    price = agent.price_per_request
    if price is None:
        price = settings.default_price_per_request
    logger.debug("Routing agent %s to %s at price %s", agent.agent_id, wallet, price)
    return Route(agent_id=agent.agent_id, wallet_address=wallet, price=price)
