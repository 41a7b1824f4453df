"""Unit tests for per-schedule concurrency control."""

import pytest
import pytest_asyncio
import asyncio
import json
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from downtime_sentinel.scheduling.locks import (
    ConcurrencyManager,
    LockInfo,
    LockTimeoutError,
    LockBackendError,
    InMemoryLockBackend,
    RedisLockBackend,
    create_concurrency_manager
)


class TestLockInfo:
    """Test LockInfo functionality."""

    def test_lock_expiration_check(self):
        """Test lock expiration detection."""
        now = datetime.now(timezone.utc)

        expired_lock = LockInfo(
            key="expired",
            owner_id="owner-1",
            acquired_at=now - timedelta(hours=2),
            expires_at=now - timedelta(hours=1),
            metadata={}
        )
        assert expired_lock.is_expired is True

        active_lock = LockInfo(
            key="active",
            owner_id="owner-2",
            acquired_at=now - timedelta(minutes=30),
            expires_at=now + timedelta(minutes=30),
            metadata={}
        )
        assert active_lock.is_expired is False

    def test_lock_serialization(self):
        """Test LockInfo serialization and deserialization."""
        now = datetime.now(timezone.utc)
        original = LockInfo(
            key="schedule:db1!weekly",
            owner_id="owner-456",
            acquired_at=now,
            expires_at=now + timedelta(seconds=300),
            metadata={"schedule": "db1!weekly"}
        )

        data = original.to_dict()
        assert data["key"] == "schedule:db1!weekly"
        assert data["owner_id"] == "owner-456"

        restored = LockInfo.from_dict(data)
        assert restored == original


class TestInMemoryLockBackend:
    """Test InMemoryLockBackend functionality."""

    @pytest.fixture
    def backend(self):
        return InMemoryLockBackend()

    @pytest.mark.asyncio
    async def test_acquire_and_release_lock(self, backend):
        """Test basic lock acquisition and release."""
        key = "test-lock"
        owner_id = str(uuid4())

        assert await backend.acquire_lock(key, owner_id, timeout_seconds=300, metadata={}) is True

        lock_info = await backend.get_lock_info(key)
        assert lock_info is not None
        assert lock_info.owner_id == owner_id

        assert await backend.release_lock(key, owner_id) is True
        assert await backend.release_lock(key, owner_id) is False

    @pytest.mark.asyncio
    async def test_lock_conflict(self, backend):
        """Test that two owners cannot acquire the same lock."""
        owner1 = str(uuid4())
        owner2 = str(uuid4())

        assert await backend.acquire_lock("conflict", owner1, timeout_seconds=300, metadata={}) is True
        assert await backend.acquire_lock("conflict", owner2, timeout_seconds=300, metadata={}) is False

        assert await backend.release_lock("conflict", owner1) is True
        assert await backend.acquire_lock("conflict", owner2, timeout_seconds=300, metadata={}) is True

    @pytest.mark.asyncio
    async def test_wrong_owner_release(self, backend):
        owner1 = str(uuid4())
        await backend.acquire_lock("wrong-owner", owner1, timeout_seconds=300, metadata={})

        assert await backend.release_lock("wrong-owner", str(uuid4())) is False
        info = await backend.get_lock_info("wrong-owner")
        assert info.owner_id == owner1

    @pytest.mark.asyncio
    async def test_expired_lock_can_be_taken_over(self, backend):
        """Test an expired lock no longer blocks other owners."""
        await backend.acquire_lock("stale", "crashed-owner", timeout_seconds=0.01, metadata={})
        await asyncio.sleep(0.05)

        assert await backend.get_lock_info("stale") is None
        assert await backend.acquire_lock("stale", "new-owner", timeout_seconds=300, metadata={}) is True

    @pytest.mark.asyncio
    async def test_cleanup_expired_locks(self, backend):
        await backend.acquire_lock("cleanup", str(uuid4()), timeout_seconds=0.01, metadata={})
        await backend.acquire_lock("kept", str(uuid4()), timeout_seconds=300, metadata={})
        await asyncio.sleep(0.05)

        assert await backend.cleanup_expired_locks() == 1
        assert set(backend._locks) == {"kept"}


class TestConcurrencyManager:
    """Test ConcurrencyManager functionality."""

    @pytest_asyncio.fixture
    async def manager(self):
        manager = ConcurrencyManager(
            InMemoryLockBackend(),
            default_timeout_seconds=300,
            wait_timeout_seconds=0.05,
            retry_interval_seconds=0.01
        )
        await manager.start()
        yield manager
        await manager.stop()

    @pytest.mark.asyncio
    async def test_hold_schedule_lock(self, manager):
        """Test holding and releasing a schedule lock."""
        async with manager.hold("db1!weekly") as lock_info:
            assert lock_info.key == "schedule:db1!weekly"
            assert lock_info.metadata["schedule"] == "db1!weekly"
            assert await manager.backend.get_lock_info("schedule:db1!weekly") is not None

        assert await manager.backend.get_lock_info("schedule:db1!weekly") is None

    @pytest.mark.asyncio
    async def test_concurrent_lock_conflict(self, manager):
        """Test that a held schedule lock times out other holders."""
        async with manager.hold("db1!weekly"):
            with pytest.raises(LockTimeoutError):
                async with manager.hold("db1!weekly"):
                    pass

            # Other schedules are independent
            async with manager.hold("db1!daily"):
                pass

    @pytest.mark.asyncio
    async def test_waiter_acquires_after_release(self, manager):
        """Test a waiting holder gets the lock once it is released."""
        order = []

        async def first():
            async with manager.hold("db1!weekly"):
                order.append("first")
                await asyncio.sleep(0.02)

        async def second():
            await asyncio.sleep(0.005)
            async with manager.hold("db1!weekly", wait_timeout_seconds=1):
                order.append("second")

        await asyncio.gather(first(), second())
        assert order == ["first", "second"]

    @pytest.mark.asyncio
    async def test_timeout_names_holder(self, manager):
        """Test a lock timeout reports who holds the lock."""
        async with manager.hold("db1!weekly") as held:
            with pytest.raises(LockTimeoutError) as exc_info:
                async with manager.hold("db1!weekly"):
                    pass

        assert f"held by {held.owner_id}" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_released_on_error(self, manager):
        """Test that locks are released even if errors occur."""
        with pytest.raises(ValueError):
            async with manager.hold("db1!weekly"):
                raise ValueError("Test error")

        assert await manager.backend.get_lock_info("schedule:db1!weekly") is None


class FakeRedis:
    """Minimal stand-in for the redis.asyncio client calls the backend makes."""

    def __init__(self):
        self.values = {}

    async def set(self, key, value, nx=False, px=None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    async def get(self, key):
        return self.values.get(key)


class TestRedisLockBackend:
    """Test the Redis value format without a server."""

    @pytest.mark.asyncio
    async def test_lock_value_round_trip(self):
        backend = RedisLockBackend(key_prefix="test:")
        backend._redis = FakeRedis()

        assert await backend.acquire_lock("schedule:db1!weekly", "owner-1", timeout_seconds=300, metadata={"schedule": "db1!weekly"}) is True
        assert await backend.acquire_lock("schedule:db1!weekly", "owner-2", timeout_seconds=300, metadata={}) is False

        stored = json.loads(backend._redis.values["test:schedule:db1!weekly"])
        assert stored["owner_id"] == "owner-1"

        info = await backend.get_lock_info("schedule:db1!weekly")
        assert info.key == "schedule:db1!weekly"
        assert info.owner_id == "owner-1"
        assert info.metadata == {"schedule": "db1!weekly"}
        assert not info.is_expired


class TestConvenienceFunctions:
    """Test convenience functions."""

    @pytest.mark.asyncio
    async def test_create_concurrency_manager_inmemory(self):
        manager = create_concurrency_manager(backend_type="memory", default_timeout_seconds=1800)

        assert isinstance(manager, ConcurrencyManager)
        assert isinstance(manager.backend, InMemoryLockBackend)
        assert manager.default_timeout_seconds == 1800

        await manager.start()
        try:
            async with manager.hold("db1!weekly") as lock:
                assert lock is not None
        finally:
            await manager.stop()

    def test_create_concurrency_manager_redis(self):
        manager = create_concurrency_manager(backend_type="redis", redis_url="redis://cache:6379/1")

        assert isinstance(manager.backend, RedisLockBackend)
        assert manager.backend.redis_url == "redis://cache:6379/1"

    def test_invalid_backend_type(self):
        with pytest.raises(ValueError):
            create_concurrency_manager(backend_type="zookeeper")

    @pytest.mark.asyncio
    async def test_redis_unavailable(self):
        """Test an unreachable Redis surfaces as a backend error."""
        backend = RedisLockBackend(redis_url="redis://127.0.0.1:1", socket_connect_timeout=0.1)

        with pytest.raises(LockBackendError):
            await backend.acquire_lock("schedule:x", "owner", timeout_seconds=1, metadata={})
