"""YAML configuration of monitored entities and maintenance schedules.

A configuration file looks like::

    hosts:
      - name: db1
        services: [postgres]
        vars:
          role: database

    schedules:
      - host_name: db1
        service_name: postgres
        short_name: weekly-vacuum
        author: ops
        comment: Weekly vacuum window
        timezone: Europe/Berlin
        ranges:
          friday: "22:00-23:00"
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .directory import InMemoryEntityDirectory
from .models import Schedule, SchedulingError


logger = logging.getLogger(__name__)


class ConfigLoadError(SchedulingError):
    """Exception raised when a configuration file cannot be read or is invalid."""
    pass


class HostConfig(BaseModel):
    """A host entry and the services running on it."""

    name: str = Field(description="Host name")
    display_name: str = Field(default="", description="Human readable name")
    services: List[str] = Field(default_factory=list, description="Service short names on the host")
    vars: Dict[str, Any] = Field(default_factory=dict, description="Free-form host variables")

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if not v or not v.strip():
            raise ValueError("Host name must not be empty")
        return v

    @field_validator('services')
    @classmethod
    def validate_services(cls, v):
        if len(set(v)) != len(v):
            raise ValueError("Service names must be unique per host")
        return v


class DowntimeConfig(BaseModel):
    """Contents of one configuration file."""

    hosts: List[HostConfig] = Field(default_factory=list)
    schedules: List[Schedule] = Field(default_factory=list)

    @model_validator(mode='after')
    def validate_unique_names(self):
        """Reject duplicate host and schedule names."""
        host_names = [host.name for host in self.hosts]
        duplicates = sorted({name for name in host_names if host_names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate host names: {', '.join(duplicates)}")

        schedule_names = [schedule.name for schedule in self.schedules]
        duplicates = sorted({name for name in schedule_names if schedule_names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate schedule names: {', '.join(duplicates)}")
        return self

    def populate_directory(self, directory: Optional[InMemoryEntityDirectory] = None) -> InMemoryEntityDirectory:
        """Register the configured hosts and services in a directory."""
        directory = directory or InMemoryEntityDirectory()

        for host in self.hosts:
            directory.add_host(host.name, display_name=host.display_name, vars=host.vars)
            for service_name in host.services:
                directory.add_service(host.name, service_name)

        return directory


def load_configuration(path: Union[str, Path]) -> DowntimeConfig:
    """Load and validate a configuration file.

    Args:
        path: YAML file to read

    Returns:
        Parsed configuration

    Raises:
        ConfigLoadError: If the file is missing, unparseable or invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigLoadError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {config_path}: {e}")
    except OSError as e:
        raise ConfigLoadError(f"Failed to read {config_path}: {e}")

    if config_data is None:
        config_data = {}
    if not isinstance(config_data, dict):
        raise ConfigLoadError("Configuration file must contain a YAML dictionary")

    try:
        config = DowntimeConfig(**config_data)
    except ValidationError as e:
        raise ConfigLoadError(f"Invalid configuration in {config_path}: {e}")

    logger.info(
        f"Loaded {len(config.hosts)} hosts and {len(config.schedules)} schedules from {config_path}"
    )
    return config
