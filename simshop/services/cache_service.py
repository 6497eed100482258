"""
Cache backends for settings snapshots and FX rates.

Supports:
1. Redis (preferred for multi-process deployments)
2. In-memory fallback (single process, tests)

Usage:
    cache = get_cache_backend()
    await cache.set("simshop:fx:EUR", 0.92, ttl=3600)
    rate = await cache.get("simshop:fx:EUR")
"""
import json
from typing import Any, Optional, Dict
from datetime import datetime, timedelta, timezone
from abc import ABC, abstractmethod
import asyncio
import logging

import redis.asyncio as redis

from simshop.config import settings

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Abstract cache backend interface."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        """Set value in cache with TTL (seconds)."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key from cache."""
        pass

    @abstractmethod
    async def clear_pattern(self, pattern: str) -> int:
        """Clear all keys matching pattern."""
        pass


class InMemoryCache(CacheBackend):
    """
    Process-local cache.

    Entries expire lazily on read; nothing is shared between workers.
    """

    def __init__(self):
        self._entries: Dict[str, tuple[Any, datetime]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= datetime.now(timezone.utc):
                del self._entries[key]
                return None
            return value

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        async with self._lock:
            self._entries[key] = (value, datetime.now(timezone.utc) + timedelta(seconds=ttl))
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def clear_pattern(self, pattern: str) -> int:
        """Prefix match only: 'simshop:fx:*' clears every FX entry."""
        async with self._lock:
            prefix = pattern.rstrip('*')
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)


class RedisCache(CacheBackend):
    """Redis backend. Values are stored as JSON; errors degrade to cache misses."""

    def __init__(self, redis_url: str):
        self._redis_url = redis_url
        self._client = None

    def _get_client(self):
        if self._client is None:
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Optional[Any]:
        try:
            value = await self._get_client().get(key)
        except redis.RedisError as e:
            logger.warning(f"Redis get failed for {key}: {e}")
            return None
        return json.loads(value) if value else None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        try:
            await self._get_client().set(key, json.dumps(value), ex=ttl)
            return True
        except redis.RedisError as e:
            logger.warning(f"Redis set failed for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            await self._get_client().delete(key)
            return True
        except redis.RedisError as e:
            logger.warning(f"Redis delete failed for {key}: {e}")
            return False

    async def clear_pattern(self, pattern: str) -> int:
        client = self._get_client()
        deleted = 0
        try:
            cursor = 0
            while True:
                cursor, keys = await client.scan(cursor, match=pattern, count=100)
                if keys:
                    await client.delete(*keys)
                    deleted += len(keys)
                if cursor == 0:
                    break
        except redis.RedisError as e:
            logger.warning(f"Redis clear_pattern failed for {pattern}: {e}")
        return deleted


_backend: Optional[CacheBackend] = None


def get_cache_backend() -> CacheBackend:
    """Shared backend: Redis when REDIS_URL is set, otherwise in-memory."""
    global _backend
    if _backend is None:
        if settings.REDIS_URL:
            logger.info("Using Redis cache backend")
            _backend = RedisCache(settings.REDIS_URL)
        else:
            logger.info("Using in-memory cache backend")
            _backend = InMemoryCache()
    return _backend
