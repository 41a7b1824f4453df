"""Per-schedule mutual exclusion for reconciliation.

Reconciling a schedule reads its existing maintenance records and may create
a new one. Both steps run under a lock keyed by the schedule name so that two
reconciliations of the same schedule never interleave, whether they run in
one process (in-memory backend) or across several (Redis backend).
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Any, AsyncGenerator
from uuid import uuid4

import redis.asyncio as redis


logger = logging.getLogger(__name__)


class LockError(Exception):
    """Exception raised when lock operations fail."""
    pass


class LockTimeoutError(LockError):
    """Exception raised when lock acquisition times out."""
    pass


class LockBackendError(LockError):
    """Exception raised when lock backend operations fail."""
    pass


@dataclass
class LockInfo:
    """Information about an acquired lock."""

    key: str
    owner_id: str
    acquired_at: datetime
    expires_at: datetime
    metadata: Dict[str, Any]

    @property
    def is_expired(self) -> bool:
        """Check if the lock has expired."""
        return datetime.now(timezone.utc) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            'key': self.key,
            'owner_id': self.owner_id,
            'acquired_at': self.acquired_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
            'metadata': self.metadata
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LockInfo':
        """Create LockInfo from dictionary."""
        return cls(
            key=data['key'],
            owner_id=data['owner_id'],
            acquired_at=datetime.fromisoformat(data['acquired_at']),
            expires_at=datetime.fromisoformat(data['expires_at']),
            metadata=data.get('metadata', {})
        )


class LockBackend(ABC):
    """Abstract base class for lock backends."""

    @abstractmethod
    async def acquire_lock(
        self,
        key: str,
        owner_id: str,
        timeout_seconds: float,
        metadata: Dict[str, Any]
    ) -> bool:
        """Attempt to acquire a lock without waiting.

        Returns:
            True if lock acquired, False if it is held by someone else
        """
        pass

    @abstractmethod
    async def release_lock(self, key: str, owner_id: str) -> bool:
        """Release a lock.

        Returns:
            True if lock released, False if not owned
        """
        pass

    @abstractmethod
    async def get_lock_info(self, key: str) -> Optional[LockInfo]:
        pass

    @abstractmethod
    async def cleanup_expired_locks(self) -> int:
        """Clean up expired locks.

        Returns:
            Number of locks cleaned up
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close backend connections."""
        pass


class RedisLockBackend(LockBackend):
    """Redis-based lock backend for schedulers running in several processes."""

    _RELEASE_SCRIPT = """
    local current = redis.call('GET', KEYS[1])
    if current then
        local data = cjson.decode(current)
        if data.owner_id == ARGV[1] then
            return redis.call('DEL', KEYS[1])
        end
    end
    return 0
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "downtime_sentinel:locks:",
        **redis_kwargs
    ):
        """Initialize Redis lock backend.

        Args:
            redis_url: Redis connection URL
            key_prefix: Prefix for lock keys
            **redis_kwargs: Additional Redis connection parameters
        """
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.redis_kwargs = redis_kwargs
        self._redis = None

    async def _get_redis(self):
        """Get Redis connection, creating if necessary."""
        if self._redis is None:
            try:
                self._redis = redis.from_url(self.redis_url, **self.redis_kwargs)
                await self._redis.ping()
            except Exception as e:
                self._redis = None
                raise LockBackendError(f"Failed to connect to Redis: {e}")

        return self._redis

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def acquire_lock(
        self,
        key: str,
        owner_id: str,
        timeout_seconds: float,
        metadata: Dict[str, Any]
    ) -> bool:
        """Acquire lock using Redis SET with NX and PX options."""
        try:
            redis_client = await self._get_redis()
            now = datetime.now(timezone.utc)

            lock_info = LockInfo(
                key=key,
                owner_id=owner_id,
                acquired_at=now,
                expires_at=now + timedelta(seconds=timeout_seconds),
                metadata=metadata
            )

            result = await redis_client.set(
                self._make_key(key),
                json.dumps(lock_info.to_dict()),
                nx=True,
                px=max(1, int(timeout_seconds * 1000))
            )
            return bool(result)

        except LockBackendError:
            raise
        except Exception as e:
            logger.error(f"Failed to acquire lock '{key}': {e}")
            raise LockBackendError(f"Lock acquisition failed: {e}")

    async def release_lock(self, key: str, owner_id: str) -> bool:
        """Release lock using a Lua script so only the owner can delete it."""
        try:
            redis_client = await self._get_redis()
            result = await redis_client.eval(self._RELEASE_SCRIPT, 1, self._make_key(key), owner_id)
            return result == 1

        except LockBackendError:
            raise
        except Exception as e:
            logger.error(f"Failed to release lock '{key}': {e}")
            raise LockBackendError(f"Lock release failed: {e}")

    async def get_lock_info(self, key: str) -> Optional[LockInfo]:
        try:
            redis_client = await self._get_redis()
            raw = await redis_client.get(self._make_key(key))
            if not raw:
                return None

            return LockInfo.from_dict(json.loads(raw))

        except Exception as e:
            logger.error(f"Failed to get lock info for '{key}': {e}")
            return None

    async def cleanup_expired_locks(self) -> int:
        # Redis expires lock keys on its own
        return 0

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None


class InMemoryLockBackend(LockBackend):
    """In-memory lock backend for single-process deployments."""

    def __init__(self):
        self._locks: Dict[str, LockInfo] = {}
        self._lock = asyncio.Lock()

    async def acquire_lock(
        self,
        key: str,
        owner_id: str,
        timeout_seconds: float,
        metadata: Dict[str, Any]
    ) -> bool:
        async with self._lock:
            current = self._locks.get(key)
            if current is not None and not current.is_expired:
                return False

            now = datetime.now(timezone.utc)
            self._locks[key] = LockInfo(
                key=key,
                owner_id=owner_id,
                acquired_at=now,
                expires_at=now + timedelta(seconds=timeout_seconds),
                metadata=metadata
            )
            return True

    async def release_lock(self, key: str, owner_id: str) -> bool:
        async with self._lock:
            current = self._locks.get(key)
            if current is None or current.owner_id != owner_id:
                return False

            del self._locks[key]
            return True

    async def get_lock_info(self, key: str) -> Optional[LockInfo]:
        async with self._lock:
            current = self._locks.get(key)
            if current is None or current.is_expired:
                return None
            return current

    async def cleanup_expired_locks(self) -> int:
        async with self._lock:
            expired_keys = [key for key, lock in self._locks.items() if lock.is_expired]
            for key in expired_keys:
                del self._locks[key]
            return len(expired_keys)

    async def close(self) -> None:
        async with self._lock:
            self._locks.clear()


class ConcurrencyManager:
    """Hands out per-schedule locks from a pluggable backend."""

    def __init__(
        self,
        backend: LockBackend,
        default_timeout_seconds: float = 300,
        wait_timeout_seconds: float = 5,
        retry_interval_seconds: float = 0.1,
        cleanup_interval_seconds: float = 300,
    ):
        """Initialize concurrency manager.

        Args:
            backend: Lock backend to use
            default_timeout_seconds: Lock expiry, bounds how long a crashed holder blocks others
            wait_timeout_seconds: Default time to wait for a held lock
            retry_interval_seconds: Delay between acquisition attempts
            cleanup_interval_seconds: Interval for the expired-lock cleanup task
        """
        self.backend = backend
        self.default_timeout_seconds = default_timeout_seconds
        self.wait_timeout_seconds = wait_timeout_seconds
        self.retry_interval_seconds = retry_interval_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.instance_id = str(uuid4())
        self._cleanup_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the expired-lock cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info(f"Started concurrency manager (instance: {self.instance_id})")

    async def stop(self) -> None:
        """Stop the cleanup task and close the backend."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        await self.backend.close()
        logger.info(f"Stopped concurrency manager (instance: {self.instance_id})")

    @asynccontextmanager
    async def hold(
        self,
        schedule_name: str,
        wait_timeout_seconds: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AsyncGenerator[LockInfo, None]:
        """Hold the lock of a schedule for the duration of the block.

        Args:
            schedule_name: Schedule to lock
            wait_timeout_seconds: Time to wait if the lock is held (default: manager default)
            metadata: Additional lock metadata

        Yields:
            LockInfo of the acquired lock

        Raises:
            LockTimeoutError: If the lock could not be acquired in time
            LockBackendError: If the backend fails
        """
        lock_key = self._make_lock_key(schedule_name)
        owner_id = f"{self.instance_id}:{uuid4()}"
        wait_timeout = self.wait_timeout_seconds if wait_timeout_seconds is None else wait_timeout_seconds
        lock_metadata = {
            'schedule': schedule_name,
            'manager_instance': self.instance_id,
            **(metadata or {})
        }

        deadline = time.monotonic() + wait_timeout
        while not await self.backend.acquire_lock(lock_key, owner_id, self.default_timeout_seconds, lock_metadata):
            if time.monotonic() >= deadline:
                holder = await self.backend.get_lock_info(lock_key)
                held_by = f" (held by {holder.owner_id} until {holder.expires_at.isoformat()})" if holder else ""
                raise LockTimeoutError(
                    f"Failed to acquire lock for schedule '{schedule_name}' within {wait_timeout} seconds{held_by}"
                )
            await asyncio.sleep(self.retry_interval_seconds)

        now = datetime.now(timezone.utc)
        lock_info = LockInfo(
            key=lock_key,
            owner_id=owner_id,
            acquired_at=now,
            expires_at=now + timedelta(seconds=self.default_timeout_seconds),
            metadata=lock_metadata
        )

        logger.debug(f"Acquired lock: {schedule_name} (owner: {owner_id})")
        try:
            yield lock_info
        finally:
            released = await self.backend.release_lock(lock_key, owner_id)
            if released:
                logger.debug(f"Released lock: {schedule_name}")
            else:
                logger.warning(f"Failed to release lock: {schedule_name} (may have expired)")

    def _make_lock_key(self, schedule_name: str) -> str:
        return f"schedule:{schedule_name}"

    async def _cleanup_loop(self) -> None:
        """Background task for cleaning up expired locks."""
        while True:
            try:
                await asyncio.sleep(self.cleanup_interval_seconds)
                cleaned_count = await self.backend.cleanup_expired_locks()
                if cleaned_count > 0:
                    logger.info(f"Cleaned up {cleaned_count} expired locks")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in lock cleanup task: {e}")


def create_concurrency_manager(
    backend_type: str = "in_memory",
    redis_url: str = "redis://localhost:6379",
    **kwargs
) -> ConcurrencyManager:
    """Create a concurrency manager.

    Args:
        backend_type: Backend type ('in_memory', 'memory' or 'redis')
        redis_url: Redis connection URL (for redis backend)
        **kwargs: Additional manager parameters

    Returns:
        Configured ConcurrencyManager (not started)

    Raises:
        ValueError: If backend_type is invalid
    """
    if backend_type == "memory":
        backend_type = "in_memory"

    if backend_type == "redis":
        backend = RedisLockBackend(redis_url=redis_url)
    elif backend_type == "in_memory":
        backend = InMemoryLockBackend()
    else:
        raise ValueError(f"Invalid backend type: {backend_type}")

    return ConcurrencyManager(backend, **kwargs)
