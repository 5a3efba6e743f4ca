"""Per-key serialization locks for queue recalculation.

Two backends share one interface: ``LocalKeyLock`` serializes workers inside a
single process, ``RedisKeyLock`` serializes workers across processes.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

import structlog
from redis.asyncio import Redis
from redis.exceptions import LockError, RedisError

from clinic_queue.config import settings
from clinic_queue.core.exceptions import LockContentionTimeout, TransientStoreError

logger = structlog.get_logger(__name__)


class KeyLock(Protocol):
    """Mutual exclusion keyed by an arbitrary string."""

    def hold(self, key: str) -> AbstractAsyncContextManager[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        ...


class LocalKeyLock:
    """In-process lock per key built on ``asyncio.Lock``."""

    def __init__(self, acquire_timeout: float | None = None):
        """Initialize with the bound on waiting for a held key."""
        self.acquire_timeout = acquire_timeout or settings.lock_acquire_timeout_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    def locked(self, key: str) -> bool:
        """Whether ``key`` is currently held."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key``.

        Raises:
            LockContentionTimeout: If the key stays held past the acquire timeout
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.acquire_timeout)
            except TimeoutError:
                raise LockContentionTimeout(key, self.acquire_timeout) from None
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]


class RedisKeyLock:
    """Distributed lock per key using redis-py's lease-based ``Lock``."""

    def __init__(
        self,
        redis_client: Redis,
        acquire_timeout: float | None = None,
        lease: float | None = None,
        prefix: str = "clinic_queue:lock:",
    ):
        """Initialize with a Redis client, the acquire bound and the lease length."""
        self.redis = redis_client
        self.acquire_timeout = acquire_timeout or settings.lock_acquire_timeout_seconds
        self.lease = lease or settings.lock_lease_seconds
        self.prefix = prefix

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the distributed lock for ``key``.

        Raises:
            LockContentionTimeout: If the key stays held past the acquire timeout
            TransientStoreError: If Redis is unreachable
        """
        lock = self.redis.lock(
            f"{self.prefix}{key}",
            timeout=self.lease,
            blocking_timeout=self.acquire_timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            raise TransientStoreError(f"Lock backend unavailable: {e}") from e
        if not acquired:
            raise LockContentionTimeout(key, self.acquire_timeout)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # Lease expired while the handler ran; another worker may now own the key
                logger.warning("queue_lock_lease_lost", key=key, error=str(e))


def build_key_lock() -> KeyLock:
    """Build the lock backend selected by ``LOCK_BACKEND``."""
    if settings.lock_backend == "redis":
        from clinic_queue.core.redis_client import get_redis_client

        return RedisKeyLock(get_redis_client())
    if settings.lock_backend != "local":
        raise ValueError(f"Unknown lock backend: {settings.lock_backend}")
    return LocalKeyLock()
