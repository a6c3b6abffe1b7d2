"""
Cache
=====

Best-effort TTL key/value cache with prefix invalidation.

The cache only saves round trips to the store. It is never consulted for a
correctness decision, so backend failures are logged and treated as misses.
Values must be JSON-serializable.
"""

import json
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple
from uuid import UUID

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger(__name__)


class CachePrefix:
    """Key layout shared by readers and invalidators."""

    BOOKING = "booking"
    USER_BOOKINGS = "user_bookings"
    AVAILABILITY = "availability"
    WEBHOOK = "webhook"

    @staticmethod
    def booking(booking_id: UUID) -> str:
        return f"{CachePrefix.BOOKING}:{booking_id}"

    @staticmethod
    def user_bookings(user_id: UUID) -> str:
        return f"{CachePrefix.USER_BOOKINGS}:{user_id}:"

    @staticmethod
    def availability(accommodation_id: UUID) -> str:
        return f"{CachePrefix.AVAILABILITY}:{accommodation_id}:"

    @staticmethod
    def webhook(provider: str, event_id: str) -> str:
        return f"{CachePrefix.WEBHOOK}:{provider}:{event_id}"


class Cache(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on miss."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None:
        """Store ``value`` for ``ttl`` seconds."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def delete_pattern(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``; return how many went."""

    async def close(self) -> None:
        pass


# =============================================================================
# REDIS
# =============================================================================

class RedisCache(Cache):
    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.redis.get(key)
        except RedisError as e:
            logger.warning("Cache read failed", key=key, error=str(e))
            return None
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.redis.setex(key, ttl, json.dumps(value, default=str))
        except RedisError as e:
            logger.warning("Cache write failed", key=key, error=str(e))

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(key)
        except RedisError as e:
            logger.warning("Cache delete failed", key=key, error=str(e))

    async def delete_pattern(self, prefix: str) -> int:
        deleted = 0
        try:
            async for key in self.redis.scan_iter(match=f"{prefix}*", count=500):
                deleted += await self.redis.delete(key)
        except RedisError as e:
            logger.warning("Cache prefix invalidation failed", prefix=prefix, error=str(e))
        return deleted


# =============================================================================
# IN-MEMORY
# =============================================================================

class MemoryCache(Cache):
    """Process-local cache; entries expire lazily on read."""

    def __init__(self):
        self._entries: Dict[str, Tuple[float, str]] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if time.monotonic() >= expires_at:
            del self._entries[key]
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        # Serialize on write so cached values behave like the redis backend
        self._entries[key] = (time.monotonic() + ttl, json.dumps(value, default=str))

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def delete_pattern(self, prefix: str) -> int:
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)


async def invalidate_booking_entries(
    cache: Cache,
    booking_id: UUID,
    user_id: UUID,
    accommodation_id: Optional[UUID] = None
) -> None:
    """Drop every cached read a booking write can make stale."""
    await cache.delete(CachePrefix.booking(booking_id))
    await cache.delete_pattern(CachePrefix.user_bookings(user_id))
    if accommodation_id is not None:
        await cache.delete_pattern(CachePrefix.availability(accommodation_id))
