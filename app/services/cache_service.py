"""
Cache Service for short-lived process-wide lookups.

Supports:
1. Redis (when REDIS_URL is set; shared across workers)
2. In-memory fallback (for development/testing)

Usage:
    cache = get_cache()

    await cache.set_global("pricing_settings", snapshot, ttl=30)
    snapshot = await cache.get_global("pricing_settings")
    await cache.delete_global("pricing_settings")

Cache failures are never fatal: a Redis outage behaves like a cache miss.
"""
import json
from typing import Any, Optional, Dict
from datetime import datetime, timedelta, timezone
from abc import ABC, abstractmethod
import asyncio
import logging

from app.config import settings

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


class InMemoryCache(CacheBackend):
    """
    In-memory cache for development/fallback.

    Note: not shared across server processes; with several workers each one
    may serve a stale value for up to the TTL after an update elsewhere.
    """

    def __init__(self):
        self._cache: Dict[str, tuple[Any, datetime]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            if key in self._cache:
                value, expires_at = self._cache[key]
                if expires_at > datetime.now(timezone.utc):
                    return value
                else:
                    del self._cache[key]
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        async with self._lock:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
            self._cache[key] = (value, expires_at)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False


class RedisCache(CacheBackend):
    """Redis cache backend for production."""

    def __init__(self, redis_url: str):
        self._redis_url = redis_url
        self._client = None

    async def _get_client(self):
        if self._client is None:
            import redis.asyncio as redis
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Optional[Any]:
        try:
            client = await self._get_client()
            value = await client.get(key)
            if value:
                return json.loads(value)
            return None
        except Exception as e:
            logger.warning(f"Redis get failed for {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        try:
            client = await self._get_client()
            await client.set(key, json.dumps(value, default=str), ex=ttl)
            return True
        except Exception as e:
            logger.warning(f"Redis set failed for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            client = await self._get_client()
            await client.delete(key)
            return True
        except Exception as e:
            logger.warning(f"Redis delete failed for {key}: {e}")
            return False


class CacheService:
    """
    Namespaced cache facade.

    Keys follow the format:

        {namespace}:global:{key}

    Examples:
        coolrentals:global:pricing_settings
    """

    def __init__(self, backend: CacheBackend, namespace: str = "coolrentals"):
        self._backend = backend
        self._namespace = namespace

    def _make_global_key(self, key: str) -> str:
        return f"{self._namespace}:global:{key}"

    async def get_global(self, key: str) -> Optional[Any]:
        """Get value from global cache."""
        return await self._backend.get(self._make_global_key(key))

    async def set_global(self, key: str, value: Any, ttl: int = 3600) -> bool:
        """Set value in global cache."""
        return await self._backend.set(self._make_global_key(key), value, ttl)

    async def delete_global(self, key: str) -> bool:
        """Drop a global key (used for invalidation after writes)."""
        return await self._backend.delete(self._make_global_key(key))


# Singleton cache instance
_cache_instance: Optional[CacheService] = None


def get_cache() -> CacheService:
    """Get the cache service singleton."""
    global _cache_instance

    if _cache_instance is None:
        if settings.REDIS_URL:
            backend = RedisCache(settings.REDIS_URL)
            logger.info("Cache initialized with Redis backend")
        else:
            backend = InMemoryCache()
            logger.info("Cache initialized with in-memory backend")

        _cache_instance = CacheService(backend)

    return _cache_instance
