"""Shared Redis connection pool. Used by the rate limiter only."""

import logging
from collections.abc import AsyncGenerator

import redis.asyncio as aioredis

from agent_settlement.config import settings

logger = logging.getLogger(__name__)

redis_pool = aioredis.ConnectionPool.from_url(settings.redis_url)


async def get_redis() -> AsyncGenerator[aioredis.Redis, None]:
    """Per-request client over the shared pool; releases its connection afterwards."""
    client = aioredis.Redis(connection_pool=redis_pool)
    try:
        yield client
    finally:
        await client.aclose()


async def close_redis() -> None:
    """Drop every pooled connection. Called once on shutdown."""
    await redis_pool.disconnect()
    logger.info("Redis connection pool closed")
