"""Maintenance record storage.

Schedules hold no references to the records they create. Ownership is
recorded on the record itself (``scheduled_by``) and looked up through the
store's owner index.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from .directory import Entity
from .models import EntityKey, MaintenanceRecord, SchedulingError


logger = logging.getLogger(__name__)


class RecordNotFoundError(SchedulingError):
    """Exception raised when a maintenance record ID is unknown."""
    pass


class MaintenanceRecordStore(ABC):
    """Abstract store owning the maintenance records of all entities."""

    @abstractmethod
    async def list_records(self, entity: Entity) -> List[MaintenanceRecord]:
        """List all records on an entity."""
        pass

    @abstractmethod
    async def create_record(
        self,
        entity: Entity,
        author: str,
        comment: str,
        begin: datetime,
        end: datetime,
        fixed: bool,
        duration: timedelta,
        scheduled_by: str = "",
        triggered_by: Optional[str] = None
    ) -> str:
        """Create a record on an entity.

        Returns:
            The generated record ID
        """
        pass

    @abstractmethod
    async def tag_record(self, record_id: str, scheduled_by: str) -> None:
        """Mark a record as owned by a schedule.

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        pass

    @abstractmethod
    async def get_record(self, record_id: str) -> Optional[MaintenanceRecord]:
        pass

    @abstractmethod
    async def remove_record(self, record_id: str) -> bool:
        pass

    async def list_scheduled_by(self, entity: Entity, schedule_name: str) -> List[MaintenanceRecord]:
        """List the records on an entity created by a schedule."""
        return [
            record for record in await self.list_records(entity)
            if record.is_owned_by(schedule_name)
        ]


class InMemoryMaintenanceRecordStore(MaintenanceRecordStore):
    """In-memory record store with an owner index."""

    def __init__(self):
        self._records: Dict[str, MaintenanceRecord] = {}
        self._by_entity: Dict[EntityKey, Set[str]] = defaultdict(set)
        self._by_owner: Dict[str, Set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def list_records(self, entity: Entity) -> List[MaintenanceRecord]:
        async with self._lock:
            return self._sorted(self._by_entity.get(entity.key, ()))

    async def list_scheduled_by(self, entity: Entity, schedule_name: str) -> List[MaintenanceRecord]:
        async with self._lock:
            record_ids = self._by_owner.get(schedule_name, set()) & self._by_entity.get(entity.key, set())
            return self._sorted(record_ids)

    async def create_record(
        self,
        entity: Entity,
        author: str,
        comment: str,
        begin: datetime,
        end: datetime,
        fixed: bool,
        duration: timedelta,
        scheduled_by: str = "",
        triggered_by: Optional[str] = None
    ) -> str:
        record = MaintenanceRecord(
            entity_key=entity.key,
            author=author,
            comment=comment,
            start_time=begin,
            end_time=end,
            fixed=fixed,
            duration=duration,
            scheduled_by=scheduled_by,
            triggered_by=triggered_by
        )

        async with self._lock:
            self._records[record.id] = record
            self._by_entity[entity.key].add(record.id)
            if scheduled_by:
                self._by_owner[scheduled_by].add(record.id)

        logger.info(
            f"Added maintenance record {record.id} on '{entity.name}' "
            f"({begin.isoformat()} -> {end.isoformat()}, fixed={fixed})"
        )
        return record.id

    async def tag_record(self, record_id: str, scheduled_by: str) -> None:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise RecordNotFoundError(f"Maintenance record '{record_id}' not found")

            record.config_owner = scheduled_by
            if scheduled_by and record.scheduled_by != scheduled_by:
                self._by_owner.get(record.scheduled_by, set()).discard(record_id)
                record.scheduled_by = scheduled_by
                self._by_owner[scheduled_by].add(record_id)

    async def get_record(self, record_id: str) -> Optional[MaintenanceRecord]:
        async with self._lock:
            return self._records.get(record_id)

    async def remove_record(self, record_id: str) -> bool:
        async with self._lock:
            return self._remove(record_id)

    async def purge_expired(self, now: datetime) -> int:
        """Remove records whose window has ended.

        Returns:
            Number of records removed
        """
        async with self._lock:
            expired = [record_id for record_id, record in self._records.items() if record.is_expired(now)]
            for record_id in expired:
                self._remove(record_id)

        if expired:
            logger.info(f"Removed {len(expired)} expired maintenance records")
        return len(expired)

    def count(self) -> int:
        return len(self._records)

    def _remove(self, record_id: str) -> bool:
        record = self._records.pop(record_id, None)
        if record is None:
            return False

        self._by_entity.get(record.entity_key, set()).discard(record_id)
        if record.scheduled_by:
            self._by_owner.get(record.scheduled_by, set()).discard(record_id)
        return True

    def _sorted(self, record_ids) -> List[MaintenanceRecord]:
        records = [self._records[record_id] for record_id in record_ids]
        return sorted(records, key=lambda record: (record.start_time, record.id))
