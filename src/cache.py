"""Key-value cache contract and its Redis implementation.

Values are JSON documents stored whole under a key with a TTL. The cache is
never a source of truth; callers treat every error here as a miss.
"""

import asyncio
import json
from typing import Any, Optional, Protocol
from urllib.parse import urlparse

import redis.asyncio as aioredis

from .config import config
from .logging_utils import get_logger

logger = get_logger(__name__)

_redis_client: Optional[aioredis.Redis] = None
_init_lock = asyncio.Lock()


class Cache(Protocol):
    """Narrow read/write contract used by the balance cache."""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


def _mask_redis_url(url: str) -> str:
    """Hide the password in a redis URL for logging (redis://:****@host:6379)."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            return url.replace(f":{parsed.password}@", ":****@")
        return url
    except ValueError:
        return "redis://****"


async def get_redis(url: Optional[str] = None) -> aioredis.Redis:
    """Return the process-wide Redis client, connecting on first use."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        # Another task may have connected while we waited
        if _redis_client is not None:
            return _redis_client

        redis_url = url or config.redis_url
        client = aioredis.from_url(redis_url, decode_responses=True)
        await client.ping()
        _redis_client = client
        logger.info(f"Redis client initialized: {_mask_redis_url(redis_url)}")
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Call on process shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


class RedisCache:
    """Cache backed by redis.asyncio with JSON-encoded values."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    @classmethod
    async def connect(cls, url: Optional[str] = None) -> "RedisCache":
        return cls(await get_redis(url))

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.client.set(key, json.dumps(value, default=str), ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)
