"""Unit tests for the entity directory and the maintenance record store."""

import pytest
from datetime import datetime, timezone, timedelta

from downtime_sentinel.scheduling.directory import EntityNotFoundError, InMemoryEntityDirectory
from downtime_sentinel.scheduling.models import EntityKey, ScheduleConfigurationError
from downtime_sentinel.scheduling.store import InMemoryMaintenanceRecordStore, RecordNotFoundError


START = datetime(2024, 1, 5, 22, 0, tzinfo=timezone.utc)


class TestInMemoryEntityDirectory:
    """Test InMemoryEntityDirectory."""

    @pytest.mark.asyncio
    async def test_lookup(self, directory):
        host = await directory.lookup(EntityKey(host_name="db1"))
        service = await directory.lookup(EntityKey(host_name="db1", service_name="postgres"))

        assert host.name == "db1"
        assert host.vars == {"role": "database"}
        assert service.name == "db1!postgres"
        assert await directory.lookup(EntityKey(host_name="web1")) is None

    @pytest.mark.asyncio
    async def test_require_missing_entity(self, directory):
        """Test require raises a configuration error for unknown entities."""
        with pytest.raises(EntityNotFoundError) as exc_info:
            await directory.require(EntityKey(host_name="db1", service_name="mysql"))

        assert isinstance(exc_info.value, ScheduleConfigurationError)
        assert "Referenced service 'db1!mysql' doesn't exist" in str(exc_info.value)

    def test_service_requires_host(self):
        directory = InMemoryEntityDirectory()
        with pytest.raises(EntityNotFoundError):
            directory.add_service("web1", "nginx")

    @pytest.mark.asyncio
    async def test_remove_host_removes_services(self, directory):
        assert directory.remove(EntityKey(host_name="db1")) is True
        assert directory.list_entities() == []
        assert directory.remove(EntityKey(host_name="db1")) is False


class TestInMemoryMaintenanceRecordStore:
    """Test InMemoryMaintenanceRecordStore."""

    async def _create(self, store, entity, start, scheduled_by=""):
        return await store.create_record(
            entity,
            author="ops",
            comment="patching",
            begin=start,
            end=start + timedelta(hours=1),
            fixed=True,
            duration=timedelta(0),
            scheduled_by=scheduled_by
        )

    @pytest.mark.asyncio
    async def test_create_and_get(self, directory, store):
        entity = await directory.require(EntityKey(host_name="db1"))
        record_id = await self._create(store, entity, START, scheduled_by="db1!weekly")

        record = await store.get_record(record_id)
        assert record.entity_key == entity.key
        assert record.start_time == START
        assert record.end_time == START + timedelta(hours=1)
        assert record.scheduled_by == "db1!weekly"
        assert record.author == "ops"
        assert store.count() == 1

    @pytest.mark.asyncio
    async def test_list_scheduled_by(self, directory, store):
        """Test owner lookups only return records of that schedule on that entity."""
        host = await directory.require(EntityKey(host_name="db1"))
        service = await directory.require(EntityKey(host_name="db1", service_name="postgres"))

        later = await self._create(store, host, START + timedelta(days=7), scheduled_by="db1!weekly")
        earlier = await self._create(store, host, START, scheduled_by="db1!weekly")
        await self._create(store, host, START, scheduled_by="db1!other")
        await self._create(store, host, START)
        await self._create(store, service, START, scheduled_by="db1!weekly")

        owned = await store.list_scheduled_by(host, "db1!weekly")
        assert [record.id for record in owned] == [earlier, later]
        assert len(await store.list_records(host)) == 4

    @pytest.mark.asyncio
    async def test_tag_record(self, directory, store):
        """Test tagging sets the config owner and indexes the owner."""
        host = await directory.require(EntityKey(host_name="db1"))
        record_id = await self._create(store, host, START)

        await store.tag_record(record_id, "db1!weekly")

        record = await store.get_record(record_id)
        assert record.config_owner == "db1!weekly"
        assert [r.id for r in await store.list_scheduled_by(host, "db1!weekly")] == [record_id]

    @pytest.mark.asyncio
    async def test_tag_unknown_record(self, store):
        with pytest.raises(RecordNotFoundError):
            await store.tag_record("missing", "db1!weekly")

    @pytest.mark.asyncio
    async def test_remove_and_purge(self, directory, store):
        host = await directory.require(EntityKey(host_name="db1"))
        old = await self._create(store, host, START - timedelta(days=7), scheduled_by="db1!weekly")
        current = await self._create(store, host, START, scheduled_by="db1!weekly")
        manual = await self._create(store, host, START + timedelta(days=1))

        assert await store.remove_record(manual) is True
        assert await store.remove_record(manual) is False

        removed = await store.purge_expired(START)
        assert removed == 1
        assert await store.get_record(old) is None
        assert [r.id for r in await store.list_scheduled_by(host, "db1!weekly")] == [current]
