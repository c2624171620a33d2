"""Redis connection for the persisted token verdict store."""
import logging
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

# Seconds; bounds each verdict lookup on the screening path
SOCKET_TIMEOUT = 0.5

redis_client: Optional[redis.Redis] = None


async def get_redis(redis_url: str, socket_timeout: float = SOCKET_TIMEOUT) -> redis.Redis:
    """Return the shared client, connecting on first use."""
    global redis_client

    if redis_client is not None:
        return redis_client
    if not redis_url:
        raise ValueError("Redis URL not configured")

    client = redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )
    try:
        await client.ping()
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        await client.aclose()
        raise

    redis_client = client
    logger.info("Redis verdict store connected")
    return redis_client


async def close_redis() -> None:
    """Close the shared client."""
    global redis_client

    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None
        logger.info("Redis connection closed")


async def health_check() -> bool:
    """True when the shared client exists and answers a ping."""
    if redis_client is None:
        return False
    try:
        await redis_client.ping()
        return True
    except Exception:
        return False
