from __future__ import annotations

import logging
import time
from typing import Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class KeyValueStore:
    """
    Async string key-value store with TTL.

    Redis-backed when a URL (or client) is supplied, in-memory otherwise.
    Backend failures are logged and surface as a miss on read and a no-op
    on write; callers never see a storage exception.
    """

    def __init__(self, redis_url: Optional[str] = None, *, client=None) -> None:
        self._redis = client
        self._mem: Dict[str, Tuple[Optional[float], str]] = {}

        if self._redis is None and redis_url:
            try:
                self._redis = aioredis.from_url(redis_url, decode_responses=True)
            except (RedisError, ValueError) as e:
                logger.warning("Redis unavailable, using in-memory storage: %s", e)
                self._redis = None

    @property
    def is_durable(self) -> bool:
        return self._redis is not None

    async def get(self, key: str) -> Optional[str]:
        if self._redis is not None:
            try:
                return await self._redis.get(key)
            except RedisError as e:
                logger.warning("Storage get failed", extra={"key": key, "error": str(e)})
                return None

        entry = self._mem.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at is not None and time.time() >= expires_at:
            self._mem.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> bool:
        """Write one value atomically. Returns False when the backend rejected it."""
        if self._redis is not None:
            try:
                if ttl_seconds:
                    await self._redis.setex(key, ttl_seconds, value)
                else:
                    await self._redis.set(key, value)
                return True
            except RedisError as e:
                logger.warning("Storage set failed", extra={"key": key, "error": str(e)})
                return False

        expires_at = time.time() + ttl_seconds if ttl_seconds else None
        self._mem[key] = (expires_at, value)
        return True

    async def delete(self, key: str) -> None:
        if self._redis is not None:
            try:
                await self._redis.delete(key)
            except RedisError as e:
                logger.warning("Storage delete failed", extra={"key": key, "error": str(e)})
            return
        self._mem.pop(key, None)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
