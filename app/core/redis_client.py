"""
Redis Client: shared async client.

Uses REDIS_URL from settings (default: redis://localhost:6379/0). Job
update notifications are published through this client.
"""
import asyncio
import json
from typing import Any
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """Hide the password in REDIS_URL for logs (redis://:****@host:6379)."""
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


async def get_redis() -> aioredis.Redis:
    """Return the shared Redis client (async, connection pool)."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        # another coroutine may have initialised it while we waited
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def publish_json(
    channel: str,
    payload: dict[str, Any],
    *,
    history_key: str | None = None,
    history_size: int = 100,
) -> None:
    """Publish a JSON message and optionally keep a bounded history list."""
    message = json.dumps(payload, ensure_ascii=False, default=str)
    redis = await get_redis()
    await redis.publish(channel, message)
    if history_key:
        await redis.lpush(history_key, message)
        await redis.ltrim(history_key, 0, history_size - 1)


async def close_redis() -> None:
    """Close the Redis connection; call on app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
