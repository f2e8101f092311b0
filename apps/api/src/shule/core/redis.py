"""
Redis Configuration

Async Redis client used for rate limiting. Redis is optional in
development: callers fall back to in-process state when it is absent.
"""

from redis.asyncio import Redis, from_url
from redis.exceptions import RedisError

from shule.core.config import settings

# Redis client instance
redis_client: Redis | None = None


async def init_redis() -> Redis:
    """
    Initialize Redis connection.

    Call this on application startup.
    """
    global redis_client
    client = from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    # Test connection before publishing the client
    await client.ping()
    redis_client = client
    return redis_client


async def ping_redis() -> bool:
    """Check that Redis answers. False when it is absent or unreachable."""
    if redis_client is None:
        return False
    try:
        return bool(await redis_client.ping())
    except (RedisError, OSError):
        return False


async def close_redis() -> None:
    """Close Redis connection."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None
