"""
Redis connection pool shared by the sweep locks and the event publisher.

The pool is created on first use so the API can be imported and tested
without a reachable Redis.
"""

import logging
from typing import Optional

import redis.asyncio as aioredis

from dispatch_engine.config import settings

logger = logging.getLogger(__name__)

_pool: Optional[aioredis.ConnectionPool] = None


def _connection_pool() -> aioredis.ConnectionPool:
    global _pool
    if _pool is None:
        _pool = aioredis.ConnectionPool.from_url(
            settings.redis_url, decode_responses=True
        )
    return _pool


def redis_client() -> aioredis.Redis:
    """Client for construction-time wiring (the event publisher)."""
    return aioredis.Redis(connection_pool=_connection_pool())


async def get_redis() -> aioredis.Redis:
    """Return a Redis client backed by the shared connection pool."""
    return redis_client()


async def close_redis() -> None:
    global _pool
    if _pool is None:
        return
    pool, _pool = _pool, None
    await pool.disconnect()
    logger.info("Redis pool closed")
