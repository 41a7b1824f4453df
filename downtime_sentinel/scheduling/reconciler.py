"""Per-schedule reconciliation of upcoming maintenance records.

Reconciling a schedule makes sure exactly one upcoming maintenance record
owned by it exists: if one is already pending nothing happens, otherwise the
next segment is resolved and a record is created for it. Records are created
just in time, one window at a time, on every dispatcher tick.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Awaitable, TypeVar

from .clock import Clock, SystemClock
from .directory import EntityDirectory
from .locks import ConcurrencyManager, LockTimeoutError, InMemoryLockBackend
from .models import Schedule, Segment, NO_SEGMENT
from .segments import SegmentFinder
from .store import MaintenanceRecordStore


logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_COLLABORATOR_TIMEOUT_SECONDS = 30

# directory.require, list_scheduled_by, create_record, tag_record
COLLABORATOR_CALLS_PER_RECONCILE = 4


class ReconcileOutcome(str, Enum):
    """What a reconciliation did."""
    CREATED = "created"                      # New record created
    ALREADY_SCHEDULED = "already_scheduled"  # An owned record is still pending
    NO_SEGMENT = "no_segment"                # Nothing resolvable right now, retried next tick
    BUSY = "busy"                            # Another reconciliation of the schedule holds the lock


@dataclass
class ReconcileResult:
    """Result of reconciling one schedule."""
    schedule_name: str
    outcome: ReconcileOutcome
    checked_at: datetime
    record_id: Optional[str] = None
    segment: Segment = NO_SEGMENT

    @property
    def created(self) -> bool:
        return self.outcome == ReconcileOutcome.CREATED


class ScheduleReconciler:
    """Idempotently materializes the next maintenance window of a schedule."""

    def __init__(
        self,
        directory: EntityDirectory,
        store: MaintenanceRecordStore,
        segment_finder: Optional[SegmentFinder] = None,
        concurrency_manager: Optional[ConcurrencyManager] = None,
        clock: Optional[Clock] = None,
        collaborator_timeout_seconds: float = DEFAULT_COLLABORATOR_TIMEOUT_SECONDS
    ):
        """Initialize the reconciler.

        All collaborator calls of one reconciliation must finish before the
        schedule lock expires, so the per-call timeout is bounded by the
        lock expiry of the concurrency manager.

        Args:
            directory: Entity lookup
            store: Maintenance record store
            segment_finder: Next-segment selection (default: legacy range grammar)
            concurrency_manager: Per-schedule locks (default: in-memory)
            clock: Time source (default: system clock)
            collaborator_timeout_seconds: Bound on each directory/store call

        Raises:
            ValueError: If the calls could outlive the lock
        """
        self.directory = directory
        self.store = store
        self.segment_finder = segment_finder or SegmentFinder()
        self.concurrency_manager = concurrency_manager or ConcurrencyManager(InMemoryLockBackend())
        self.clock = clock or SystemClock()
        self.collaborator_timeout_seconds = collaborator_timeout_seconds

        worst_case = collaborator_timeout_seconds * COLLABORATOR_CALLS_PER_RECONCILE
        if worst_case >= self.concurrency_manager.default_timeout_seconds:
            raise ValueError(
                f"Collaborator timeout {collaborator_timeout_seconds}s allows {worst_case}s under a lock "
                f"expiring after {self.concurrency_manager.default_timeout_seconds}s"
            )

    async def reconcile(self, schedule: Schedule, now: Optional[datetime] = None) -> ReconcileResult:
        """Ensure the schedule's next window exists as a maintenance record.

        Args:
            schedule: Schedule to reconcile
            now: Decision instant (default: clock time)

        Returns:
            ReconcileResult describing what happened

        Raises:
            EntityNotFoundError: If the schedule's entity does not exist
            Exception: Collaborator failures propagate to the caller
        """
        name = schedule.name

        try:
            async with self.concurrency_manager.hold(name):
                if now is None:
                    now = self.clock.now()
                return await self._reconcile_locked(schedule, now)
        except LockTimeoutError:
            logger.warning(f"Skipping reconciliation of '{name}': already in progress elsewhere")
            return ReconcileResult(
                schedule_name=name,
                outcome=ReconcileOutcome.BUSY,
                checked_at=now or self.clock.now()
            )

    async def _reconcile_locked(self, schedule: Schedule, now: datetime) -> ReconcileResult:
        name = schedule.name
        entity = await self._call(self.directory.require(schedule.entity_key))

        owned = await self._call(self.store.list_scheduled_by(entity, name))
        for record in owned:
            if record.is_pending(now):
                # Found a record owned by us that hasn't started yet
                logger.debug(f"Schedule '{name}' already has pending record {record.id} at {record.start_time.isoformat()}")
                return ReconcileResult(
                    schedule_name=name,
                    outcome=ReconcileOutcome.ALREADY_SCHEDULED,
                    checked_at=now,
                    record_id=record.id,
                    segment=Segment(begin=record.start_time, end=record.end_time)
                )

        segment = self.segment_finder.find_next_segment(
            schedule.ranges,
            reference=now,
            now=now,
            timezone_str=schedule.timezone
        )

        if not segment:
            logger.debug(f"No upcoming segment for schedule '{name}'")
            return ReconcileResult(schedule_name=name, outcome=ReconcileOutcome.NO_SEGMENT, checked_at=now)

        record_id = await self._call(self.store.create_record(
            entity,
            author=schedule.author,
            comment=schedule.comment,
            begin=segment.begin,
            end=segment.end,
            fixed=schedule.fixed,
            duration=schedule.duration,
            scheduled_by=name
        ))
        await self._call(self.store.tag_record(record_id, name))

        logger.info(f"Schedule '{name}' created maintenance record {record_id} for {segment}")
        return ReconcileResult(
            schedule_name=name,
            outcome=ReconcileOutcome.CREATED,
            checked_at=now,
            record_id=record_id,
            segment=segment
        )

    async def _call(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.collaborator_timeout_seconds)
