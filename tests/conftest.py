"""Shared test fixtures and configuration for Downtime Sentinel tests."""

from datetime import datetime, timezone

import pytest

from downtime_sentinel.scheduling.clock import ManualClock
from downtime_sentinel.scheduling.directory import InMemoryEntityDirectory
from downtime_sentinel.scheduling.locks import ConcurrencyManager, InMemoryLockBackend
from downtime_sentinel.scheduling.models import Schedule
from downtime_sentinel.scheduling.reconciler import ScheduleReconciler
from downtime_sentinel.scheduling.store import InMemoryMaintenanceRecordStore


# Thursday 2024-01-04 10:00 UTC
THURSDAY_MORNING = datetime(2024, 1, 4, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def thursday_morning():
    return THURSDAY_MORNING


@pytest.fixture
def clock():
    """Manual clock starting on a Thursday morning."""
    return ManualClock(THURSDAY_MORNING)


@pytest.fixture
def directory():
    """Directory with one host carrying one service."""
    directory = InMemoryEntityDirectory()
    directory.add_host("db1", vars={"role": "database"})
    directory.add_service("db1", "postgres")
    return directory


@pytest.fixture
def store():
    return InMemoryMaintenanceRecordStore()


@pytest.fixture
def concurrency_manager():
    return ConcurrencyManager(InMemoryLockBackend(), wait_timeout_seconds=1, retry_interval_seconds=0.01)


@pytest.fixture
def reconciler(directory, store, concurrency_manager, clock):
    return ScheduleReconciler(
        directory=directory,
        store=store,
        concurrency_manager=concurrency_manager,
        clock=clock
    )


@pytest.fixture
def friday_schedule():
    """Weekly Friday evening window on a host."""
    return Schedule(
        host_name="db1",
        short_name="friday-evening",
        author="ops",
        comment="Weekly patching",
        ranges={"friday": "22:00-23:00"}
    )
