"""
Locking for orchestration critical sections.

Two interchangeable managers:
- DistributedLockManager: Redis SET NX PX with owner-checked Lua release,
  used when several orchestrator instances share one store.
- LocalLockManager: per-key asyncio locks for a single process.

Lock keys:
- lock:tournament:{id}                   # start / restart / reset / delete / regenerate
- lock:tournament:{id}:allocation        # one allocation pass at a time
- lock:tournament:{id}:progression       # bracket advancement and round generation
- lock:tournament:{id}:match:{slug}      # veto actions, admin restarts
- lock:server:{server_id}                # load sequence against one server
"""

import asyncio
import time
import hashlib
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Optional, AsyncGenerator, Set
from uuid import uuid4

import redis.asyncio as redis

from orchestrator.logging_config import get_logger
from orchestrator.utils.async_utils import ResourceTracker

logger = get_logger(__name__)


class LockType(Enum):
    """Lock granularity types."""

    TOURNAMENT = "tournament"
    ALLOCATION = "allocation"
    PROGRESSION = "progression"
    MATCH = "match"
    SERVER = "server"


@dataclass
class LockInfo:
    """Lock metadata."""

    lock_key: str
    owner_id: str
    acquired_at: float
    expires_at: float
    lock_type: LockType


class DistributedLockError(Exception):
    """Base lock error."""

    pass


class LockAcquisitionError(DistributedLockError):
    """Failed to acquire lock within timeout."""

    pass


def make_lock_key(
    scope_id: str,
    lock_type: LockType,
    resource_id: Optional[str] = None,
) -> str:
    """Build the lock key for a scope (tournament or server id)."""
    if lock_type == LockType.SERVER:
        return f"lock:server:{scope_id}"

    base = f"lock:tournament:{scope_id}"
    if lock_type == LockType.TOURNAMENT:
        return base
    elif lock_type == LockType.ALLOCATION:
        return f"{base}:allocation"
    elif lock_type == LockType.PROGRESSION:
        return f"{base}:progression"
    elif lock_type == LockType.MATCH:
        return f"{base}:match:{resource_id}"
    return f"{base}:{lock_type.value}:{resource_id}"


class LockManager:
    """Common interface: acquire / release plus the ``lock`` context manager."""

    def __init__(
        self,
        default_lock_timeout_ms: int = 30000,
        default_acquire_timeout_ms: int = 15000,
    ):
        self.default_lock_timeout_ms = default_lock_timeout_ms
        self.default_acquire_timeout_ms = default_acquire_timeout_ms

    async def acquire(
        self,
        scope_id: str,
        lock_type: LockType,
        resource_id: Optional[str] = None,
        lock_timeout_ms: Optional[int] = None,
        acquire_timeout_ms: Optional[int] = None,
    ) -> LockInfo:
        raise NotImplementedError

    async def release(self, lock_info: LockInfo) -> bool:
        raise NotImplementedError

    async def is_locked(
        self,
        scope_id: str,
        lock_type: LockType,
        resource_id: Optional[str] = None,
    ) -> bool:
        raise NotImplementedError

    async def cleanup_all(self) -> int:
        return 0

    @asynccontextmanager
    async def lock(
        self,
        scope_id: str,
        lock_type: LockType,
        resource_id: Optional[str] = None,
        lock_timeout_ms: Optional[int] = None,
        acquire_timeout_ms: Optional[int] = None,
    ) -> AsyncGenerator[LockInfo, None]:
        """
        Context manager for automatic lock acquire/release.

        ```python
        async with locks.lock(tournament_id, LockType.ALLOCATION):
            await run_allocation_pass()
        ```
        """
        lock_info = await self.acquire(
            scope_id,
            lock_type,
            resource_id,
            lock_timeout_ms,
            acquire_timeout_ms,
        )
        try:
            yield lock_info
        finally:
            await self.release(lock_info)


class DistributedLockManager(LockManager):
    """
    Redis-based Distributed Lock Manager.

    Redis commands:
    - SET NX PX: atomic acquire with expiry
    - GET + DEL (Lua): atomic owner-checked release
    """

    # Owner-checked release so an expired holder never frees a new holder's lock
    RELEASE_LOCK_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        default_lock_timeout_ms: int = 30000,
        default_acquire_timeout_ms: int = 15000,
        retry_interval_ms: int = 50,
    ):
        super().__init__(default_lock_timeout_ms, default_acquire_timeout_ms)
        self.redis = redis_client
        self.retry_interval_ms = retry_interval_ms

        self._instance_id = str(uuid4())
        self._held_locks: Set[str] = set()

        self._release_script = None

    async def _ensure_scripts(self) -> None:
        if self._release_script is None:
            self._release_script = self.redis.register_script(self.RELEASE_LOCK_SCRIPT)

    def _make_owner_token(self) -> str:
        raw = f"{self._instance_id}:{time.time_ns()}:{uuid4().hex[:8]}"
        return hashlib.sha256(raw.encode()).hexdigest()[:32]

    async def acquire(
        self,
        scope_id: str,
        lock_type: LockType,
        resource_id: Optional[str] = None,
        lock_timeout_ms: Optional[int] = None,
        acquire_timeout_ms: Optional[int] = None,
    ) -> LockInfo:
        """
        Acquire distributed lock, retrying at a fixed interval.

        Raises:
            LockAcquisitionError: If lock cannot be acquired within timeout
        """
        await self._ensure_scripts()

        lock_timeout = lock_timeout_ms or self.default_lock_timeout_ms
        acquire_timeout = acquire_timeout_ms or self.default_acquire_timeout_ms

        lock_key = make_lock_key(scope_id, lock_type, resource_id)
        owner_token = self._make_owner_token()

        start_time = time.monotonic() * 1000

        while True:
            acquired = await self.redis.set(
                lock_key,
                owner_token,
                nx=True,
                px=lock_timeout,
            )

            if acquired:
                now = time.time()
                self._held_locks.add(lock_key)
                return LockInfo(
                    lock_key=lock_key,
                    owner_id=owner_token,
                    acquired_at=now,
                    expires_at=now + (lock_timeout / 1000),
                    lock_type=lock_type,
                )

            elapsed = (time.monotonic() * 1000) - start_time
            if elapsed >= acquire_timeout:
                raise LockAcquisitionError(
                    f"Failed to acquire lock {lock_key} within {acquire_timeout}ms. "
                    f"Lock is held by another process."
                )

            await asyncio.sleep(self.retry_interval_ms / 1000)

    async def release(self, lock_info: LockInfo) -> bool:
        """
        Release distributed lock.

        Returns:
            True if lock was released, False if not held (expired or stolen)
        """
        await self._ensure_scripts()

        result = await self._release_script(
            keys=[lock_info.lock_key],
            args=[lock_info.owner_id],
        )

        self._held_locks.discard(lock_info.lock_key)
        if result != 1:
            logger.warning("lock_expired_before_release", lock_key=lock_info.lock_key)
        return result == 1

    async def is_locked(
        self,
        scope_id: str,
        lock_type: LockType,
        resource_id: Optional[str] = None,
    ) -> bool:
        lock_key = make_lock_key(scope_id, lock_type, resource_id)
        return await self.redis.exists(lock_key) == 1

    async def cleanup_all(self) -> int:
        """
        Release all locks held by this instance (shutdown).

        Locks left behind by a crash expire through their TTL.
        """
        released = 0
        for lock_key in list(self._held_locks):
            try:
                await self.redis.delete(lock_key)
                released += 1
            except redis.RedisError as e:
                logger.warning("lock_cleanup_failed", lock_key=lock_key, error=str(e))
            self._held_locks.discard(lock_key)
        return released


class LocalLockManager(LockManager):
    """
    Process-local lock manager.

    Same contract as DistributedLockManager; TTLs are not enforced since a
    crashed holder takes the process (and its locks) with it.
    """

    def __init__(
        self,
        default_lock_timeout_ms: int = 30000,
        default_acquire_timeout_ms: int = 15000,
    ):
        super().__init__(default_lock_timeout_ms, default_acquire_timeout_ms)
        self._locks = ResourceTracker(max_age_seconds=3600)

    async def acquire(
        self,
        scope_id: str,
        lock_type: LockType,
        resource_id: Optional[str] = None,
        lock_timeout_ms: Optional[int] = None,
        acquire_timeout_ms: Optional[int] = None,
    ) -> LockInfo:
        lock_key = make_lock_key(scope_id, lock_type, resource_id)
        acquire_timeout = acquire_timeout_ms or self.default_acquire_timeout_ms
        lock_timeout = lock_timeout_ms or self.default_lock_timeout_ms

        lock: asyncio.Lock = self._locks.get_or_create(lock_key, asyncio.Lock)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=acquire_timeout / 1000)
        except asyncio.TimeoutError:
            raise LockAcquisitionError(
                f"Failed to acquire lock {lock_key} within {acquire_timeout}ms."
            )

        now = time.time()
        return LockInfo(
            lock_key=lock_key,
            owner_id=uuid4().hex,
            acquired_at=now,
            expires_at=now + (lock_timeout / 1000),
            lock_type=lock_type,
        )

    async def release(self, lock_info: LockInfo) -> bool:
        lock = self._locks.get(lock_info.lock_key)
        if lock is None or not lock.locked():
            return False
        lock.release()
        self._locks.cleanup_stale(is_busy=lambda l: l.locked())
        return True

    async def is_locked(
        self,
        scope_id: str,
        lock_type: LockType,
        resource_id: Optional[str] = None,
    ) -> bool:
        lock = self._locks.get(make_lock_key(scope_id, lock_type, resource_id))
        return lock is not None and lock.locked()


class MultiLockManager:
    """
    Acquire several locks at once in sorted key order.

    Every caller takes locks in the same order, so two callers can never
    each hold one lock the other needs.
    """

    def __init__(self, lock_manager: LockManager):
        self.lock_manager = lock_manager

    @asynccontextmanager
    async def multi_lock(
        self,
        locks: list[tuple[str, LockType, Optional[str]]],
        lock_timeout_ms: Optional[int] = None,
        acquire_timeout_ms: Optional[int] = None,
    ) -> AsyncGenerator[list[LockInfo], None]:
        """
        Args:
            locks: List of (scope_id, lock_type, resource_id) tuples

        Yields:
            List of LockInfo for acquired locks
        """
        sorted_locks = sorted(locks, key=lambda x: make_lock_key(x[0], x[1], x[2]))

        acquired_locks: list[LockInfo] = []
        try:
            for scope_id, lock_type, resource_id in sorted_locks:
                lock_info = await self.lock_manager.acquire(
                    scope_id,
                    lock_type,
                    resource_id,
                    lock_timeout_ms,
                    acquire_timeout_ms,
                )
                acquired_locks.append(lock_info)

            yield acquired_locks
        finally:
            for lock_info in reversed(acquired_locks):
                await self.lock_manager.release(lock_info)
