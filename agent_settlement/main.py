"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agent_settlement.config import settings
from agent_settlement.errors import ServiceError
from agent_settlement.middleware import AccessLogMiddleware, BodySizeLimitMiddleware
from agent_settlement.routers import agents, directory, disputes, feedback, payments, tasks

logger = logging.getLogger(__name__)


async def _recover_stake_actions() -> None:
    """Re-spawn dispatch for stake actions still pending from a previous run."""
    from agent_settlement.services.staking import recover_stake_actions

    try:
        await recover_stake_actions()
    except Exception:
        logger.exception("Stake action recovery failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    if settings.stablecoin_contract_address:
        logger.info("Stablecoin contract in force: %s", settings.stablecoin_contract_address)
    else:
        logger.warning("Stablecoin contract not configured: payments are verified as native transfers")

    if settings.staking_configured:
        await _recover_stake_actions()
    else:
        logger.warning("Staking contract not configured: slash and refund requests will be skipped")

    yield

    from agent_settlement.database import engine
    from agent_settlement.redis import close_redis
    await engine.dispose()
    await close_redis()


app = FastAPI(
    title="Agent Settlement",
    description="Payment verification, reputation and dispute settlement for agent marketplaces",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
        headers=exc.headers,
    )


# CORS - restrict to configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware: the last one added runs outermost
app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_body_bytes)
app.add_middleware(AccessLogMiddleware)

# Routers
app.include_router(agents.router)
app.include_router(directory.router)
app.include_router(payments.router)
app.include_router(tasks.router)
app.include_router(feedback.router)
app.include_router(disputes.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "network": settings.blockchain_network}
