"""Shared redis connection used by the cache's shared tier and the job queue."""

from __future__ import annotations

import logging

from redis.asyncio import Redis

from .settings import settings

logger = logging.getLogger(__name__)

_async_client: Redis | None = None


def get_async_redis() -> Redis | None:
    """Return the process-wide client, or None when redis is not configured."""
    global _async_client
    if not settings.REDIS_ENABLED or not settings.REDIS_URL:
        return None
    if _async_client is None:
        _async_client = Redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
        )
        logger.info("Redis client created for %s", settings.REDIS_URL)
    return _async_client


async def is_redis_available() -> bool:
    client = get_async_redis()
    if client is None:
        return False
    try:
        return bool(await client.ping())
    except Exception:
        logger.warning("Redis ping failed", exc_info=True)
        return False


async def close_async_redis() -> None:
    global _async_client
    if _async_client is not None:
        await _async_client.aclose()
        _async_client = None


__all__ = ["get_async_redis", "is_redis_available", "close_async_redis"]
