"""Shared Redis connection pool (optional; backs the shared degraded-mode scope)."""

import redis.asyncio as redis

from toolmeter.core.config import get_settings

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None) -> None:
    """Initialize the shared Redis connection pool and verify connectivity."""
    global _redis

    if _redis is not None:
        return

    settings = get_settings()
    _redis = redis.from_url(
        url or settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    await _redis.ping()


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis | None:
    """Return the shared Redis client, or None when Redis is not configured."""
    return _redis
