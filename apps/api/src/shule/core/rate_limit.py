"""
Rate Limiting Module

Per-client sliding-window rate limiting for API endpoints, backed by Redis
sorted sets. Falls back to in-memory storage if Redis is unavailable.

SECURITY: Rate limiting protects the credential endpoints:
- Login and password endpoints (prevents brute force)
- Registration and verification endpoints (prevents code guessing and spam)
"""

import logging
import time
from collections.abc import Callable
from functools import wraps
from typing import Any

from fastapi import Request

from shule.core import redis as redis_state
from shule.core.errors import RateLimitError

logger = logging.getLogger(__name__)

# In-memory rate limit storage (fallback when Redis unavailable)
# Format: {key: (expires_at, [timestamp, ...])}
_memory_store: dict[str, tuple[float, list[float]]] = {}

# Expired keys are swept at most this often
MEMORY_SWEEP_INTERVAL_SECONDS = 60
_next_sweep_at = 0.0


async def _check_rate_limit_redis(
    client,
    key: str,
    limit: int,
    window_seconds: int,
) -> bool:
    """
    Check rate limit using Redis.

    Uses a sliding window algorithm with Redis sorted sets.

    Args:
        client: Redis client
        key: Rate limit key (e.g., "rate_limit:10.0.0.1:/api/v1/auth/login")
        limit: Maximum requests allowed
        window_seconds: Time window in seconds

    Returns:
        True if request is allowed, False if rate limit exceeded
    """
    now = time.time()
    window_start = now - window_seconds

    pipe = client.pipeline()
    pipe.zremrangebyscore(key, 0, window_start)
    pipe.zcard(key)
    pipe.zadd(key, {str(now): now})
    pipe.expire(key, window_seconds)

    results = await pipe.execute()
    current_count = results[1]

    return current_count < limit


def _check_rate_limit_memory(
    key: str,
    limit: int,
    window_seconds: int,
) -> bool:
    """
    Check rate limit using in-memory storage.

    Fallback when Redis is unavailable. Note: This doesn't work
    across multiple server instances.
    """
    now = time.time()
    window_start = now - window_seconds
    _sweep_memory_store(now)

    _, previous = _memory_store.get(key, (0.0, []))
    hits = [ts for ts in previous if ts > window_start]

    if len(hits) >= limit:
        _memory_store[key] = (hits[-1] + window_seconds, hits)
        return False

    hits.append(now)
    _memory_store[key] = (now + window_seconds, hits)
    return True


def _sweep_memory_store(now: float) -> None:
    """Drop keys whose newest hit has left its window, like a Redis EXPIRE."""
    global _next_sweep_at
    if now < _next_sweep_at:
        return
    _next_sweep_at = now + MEMORY_SWEEP_INTERVAL_SECONDS

    expired = [key for key, (expires_at, _) in _memory_store.items() if expires_at <= now]
    for key in expired:
        del _memory_store[key]


def reset_memory_store() -> None:
    """Forget all in-memory counters."""
    global _next_sweep_at
    _memory_store.clear()
    _next_sweep_at = 0.0


async def check_rate_limit(
    key: str,
    limit: int,
    window_seconds: int,
) -> bool:
    """
    Check if a request is within rate limits.

    Tries Redis first, falls back to in-memory storage.

    Returns:
        True if request is allowed, False if rate limit exceeded
    """
    client = redis_state.redis_client

    if client is not None:
        try:
            return await _check_rate_limit_redis(client, key, limit, window_seconds)
        except Exception as e:
            logger.warning(f"Redis rate limit check failed, using memory: {e}")

    return _check_rate_limit_memory(key, limit, window_seconds)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def rate_limit(
    limit: int = 10,
    window_seconds: int = 60,
    key_func: Callable[[Request], str] | None = None,
):
    """
    Rate limiting decorator for FastAPI endpoints.

    The endpoint must accept a ``request: Request`` parameter.

    Usage:
        @router.post("/login")
        @rate_limit(limit=10, window_seconds=60)
        async def login(request: Request, ...):
            ...

    Args:
        limit: Maximum requests allowed in the window (default: 10)
        window_seconds: Time window in seconds (default: 60)
        key_func: Optional function to generate rate limit key from request.
                  Default uses client IP + endpoint path.

    Raises:
        RateLimitError: When rate limit is exceeded (HTTP 429)
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            request: Request | None = kwargs.get("request")
            if request is None:
                request = next((arg for arg in args if isinstance(arg, Request)), None)

            if request is None:
                logger.warning(
                    f"Rate limit decorator on {func.__name__} couldn't find Request object"
                )
                return await func(*args, **kwargs)

            if key_func:
                key = key_func(request)
            else:
                key = f"rate_limit:{client_ip(request)}:{request.url.path}"

            if not await check_rate_limit(key, limit, window_seconds):
                logger.warning(f"Rate limit exceeded for {key}: {limit}/{window_seconds}s")
                raise RateLimitError(
                    f"Rate limit exceeded. Maximum {limit} requests per {window_seconds} seconds.",
                    retry_after_seconds=window_seconds,
                )

            return await func(*args, **kwargs)

        return wrapper

    return decorator


__all__ = [
    "rate_limit",
    "check_rate_limit",
    "client_ip",
    "reset_memory_store",
]
