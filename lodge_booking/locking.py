"""
Keyed Locks
===========

Exclusive named locks with a bounded wait, used to serialize booking writes
that could conflict (same accommodation, same check-in date).

Two implementations share one interface:
- RedisLockManager: distributed lock on redis (``redis.asyncio`` Lock),
  with a lease so a crashed holder cannot block a key forever.
- LocalLockManager: process-local lock for single-process deployments and
  tests.

Waiters poll for the key; there is no queue and no fairness between waiters.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError

from .errors import LockTimeout
from .metrics import BOOKING_LOCK_WAIT

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class LockManager(ABC):
    """Interface for keyed mutual exclusion."""

    @abstractmethod
    async def _acquire(self, key: str, timeout: float) -> Optional[Any]:
        """Try to take ``key`` within ``timeout`` seconds; return a handle or None."""

    @abstractmethod
    async def _release(self, key: str, handle: Any) -> None:
        """Release a handle returned by ``_acquire``."""

    @asynccontextmanager
    async def hold(self, key: str, timeout: float) -> AsyncIterator[None]:
        """
        Hold ``key`` for the duration of the block.

        Raises:
            LockTimeout: If the lock is not acquired within ``timeout`` seconds.
                The block never runs without the lock.
        """
        started = time.monotonic()
        handle = await self._acquire(key, timeout)
        waited = time.monotonic() - started
        BOOKING_LOCK_WAIT.observe(waited)

        if handle is None:
            logger.warning("Lock acquisition timed out", key=key, timeout=timeout)
            raise LockTimeout(key, timeout)

        logger.debug("Lock acquired", key=key, waited_seconds=round(waited, 4))
        try:
            yield
        finally:
            await self._release(key, handle)
            logger.debug("Lock released", key=key)

    async def with_lock(
        self,
        key: str,
        func: Callable[[], Awaitable[T]],
        timeout: float
    ) -> T:
        """Run ``func`` while holding ``key``."""
        async with self.hold(key, timeout):
            return await func()


# =============================================================================
# REDIS
# =============================================================================

class RedisLockManager(LockManager):
    """Distributed lock manager backed by redis."""

    def __init__(
        self,
        redis: aioredis.Redis,
        lease_seconds: float = 60.0,
        poll_interval: float = 0.1,
        key_prefix: str = "lock"
    ):
        self.redis = redis
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval
        self.key_prefix = key_prefix

    def _lock_name(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    async def _acquire(self, key: str, timeout: float) -> Optional[Any]:
        lock = self.redis.lock(
            self._lock_name(key),
            timeout=self.lease_seconds,
            sleep=self.poll_interval,
            blocking=True,
            blocking_timeout=timeout,
        )
        if not await lock.acquire():
            return None
        return lock

    async def _release(self, key: str, handle: Any) -> None:
        try:
            await handle.release()
        except LockError:
            # The lease ran out before release; another holder may own it now.
            logger.error(
                "Lock lease expired before release",
                key=key,
                lease_seconds=self.lease_seconds
            )


# =============================================================================
# PROCESS-LOCAL
# =============================================================================

class LocalLockManager(LockManager):
    """Lock manager for a single event loop."""

    def __init__(self, poll_interval: float = 0.1):
        self.poll_interval = poll_interval
        self._held: Dict[str, object] = {}

    def is_locked(self, key: str) -> bool:
        return key in self._held

    async def _acquire(self, key: str, timeout: float) -> Optional[Any]:
        deadline = time.monotonic() + timeout
        while key in self._held:
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(self.poll_interval)

        handle = object()
        self._held[key] = handle
        return handle

    async def _release(self, key: str, handle: Any) -> None:
        if self._held.get(key) is handle:
            del self._held[key]
