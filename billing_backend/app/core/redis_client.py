"""
Redis connection for the fraud rolling counters.

Counters are advisory: when Redis is down the ledger keeps working and the
velocity heuristics simply see fewer events.
"""

import logging

import redis.asyncio as redis
from redis.exceptions import RedisError
from billing_backend.app.core.config import settings

logger = logging.getLogger(__name__)

redis_client = redis.from_url(
    settings.redis_url,
    decode_responses=settings.redis_decode_responses,
)


async def get_redis():
    # Looked up on every call so tests can swap the module attribute
    return redis_client


async def ping_redis() -> bool:
    try:
        return bool(await redis_client.ping())
    except (RedisError, OSError) as exc:
        logger.warning("Redis ping failed: %s", exc)
        return False


async def close_redis() -> None:
    await redis_client.aclose()
