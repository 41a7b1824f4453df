"""Unit tests for YAML configuration loading."""

import pytest
from datetime import timedelta

from downtime_sentinel.scheduling.config import ConfigLoadError, DowntimeConfig, load_configuration
from downtime_sentinel.scheduling.models import EntityKey


CONFIG_YAML = """
hosts:
  - name: db1
    services: [postgres]
    vars:
      role: database
  - name: web1

schedules:
  - host_name: db1
    short_name: friday-evening
    author: ops
    comment: Weekly patching
    ranges:
      friday: "22:00-23:00"
  - host_name: db1
    service_name: postgres
    short_name: vacuum
    fixed: false
    duration: 30m
    timezone: Europe/Berlin
    ranges:
      sunday: "03:00-04:00"
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "downtimes.yaml"
    path.write_text(CONFIG_YAML)
    return path


class TestLoadConfiguration:
    """Test load_configuration."""

    def test_load(self, config_file):
        config = load_configuration(config_file)

        assert [host.name for host in config.hosts] == ["db1", "web1"]
        assert config.hosts[0].services == ["postgres"]
        assert [schedule.name for schedule in config.schedules] == ["db1!friday-evening", "db1!postgres!vacuum"]

        vacuum = config.schedules[1]
        assert vacuum.fixed is False
        assert vacuum.duration == timedelta(minutes=30)
        assert vacuum.timezone == "Europe/Berlin"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        config = load_configuration(path)
        assert config.hosts == []
        assert config.schedules == []

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigLoadError, match="not found"):
            load_configuration(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("hosts: [db1\n")

        with pytest.raises(ConfigLoadError, match="Failed to parse YAML"):
            load_configuration(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- db1\n- db2\n")

        with pytest.raises(ConfigLoadError, match="YAML dictionary"):
            load_configuration(path)

    def test_invalid_schedule(self, tmp_path):
        """Test field validation errors are reported as load errors."""
        path = tmp_path / "invalid.yaml"
        path.write_text("schedules:\n  - host_name: db1\n    short_name: a!b\n")

        with pytest.raises(ConfigLoadError, match="Invalid configuration"):
            load_configuration(path)

    def test_duplicate_schedule_names(self, tmp_path):
        path = tmp_path / "duplicates.yaml"
        path.write_text(
            "schedules:\n"
            "  - {host_name: db1, short_name: weekly}\n"
            "  - {host_name: db1, short_name: weekly}\n"
        )

        with pytest.raises(ConfigLoadError, match="Duplicate schedule names: db1!weekly"):
            load_configuration(path)


class TestDowntimeConfig:
    """Test DowntimeConfig helpers."""

    @pytest.mark.asyncio
    async def test_populate_directory(self, config_file):
        directory = load_configuration(config_file).populate_directory()

        service = await directory.lookup(EntityKey(host_name="db1", service_name="postgres"))
        host = await directory.lookup(EntityKey(host_name="db1"))

        assert service is not None
        assert host.vars == {"role": "database"}
        assert await directory.lookup(EntityKey(host_name="web1")) is not None
        assert len(directory.list_entities()) == 3

    def test_duplicate_services_rejected(self):
        with pytest.raises(ValueError):
            DowntimeConfig(hosts=[{"name": "db1", "services": ["postgres", "postgres"]}])
