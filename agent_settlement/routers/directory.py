"""Directory endpoints used by request routing."""

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from agent_settlement.auth.rate_limit import check_rate_limit
from agent_settlement.config import settings
from agent_settlement.database import get_db
from agent_settlement.schemas.agent import PriceResponse, RouteResponse
from agent_settlement.services import directory as directory_service

router = APIRouter(prefix="/directory", tags=["directory"])


async def agent_id_header(x_agent_id: str | None = Header(None, alias="X-Agent-Id")) -> str | None:
    """Raw X-Agent-Id header; validated by the directory service."""
    return x_agent_id


@router.get("/price", response_model=PriceResponse, dependencies=[Depends(check_rate_limit)])
async def get_price(
    agent_id: str | None = Depends(agent_id_header),
    db: AsyncSession = Depends(get_db),
) -> PriceResponse:
    """Price for a request; the platform default when the agent sets none."""
    price = await directory_service.resolve_price(db, agent_id)
    named = agent_id.strip() if agent_id and agent_id.strip() else None
    return PriceResponse(
        agent_id=named, price=price, is_default=price == settings.default_price_per_request,
    )


@router.get("/route", response_model=RouteResponse, dependencies=[Depends(check_rate_limit)])
async def get_route(
    agent_id: str | None = Depends(agent_id_header),
    db: AsyncSession = Depends(get_db),
) -> RouteResponse:
    """Wallet and price that govern a request to the agent in X-Agent-Id."""
    route = await directory_service.resolve_route(db, agent_id)
    return RouteResponse.model_validate(route)
