"""Data models for recurring maintenance schedules.

This module defines the schedule definition, the concrete time segments a
schedule resolves to, and the maintenance records created from them.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
import zoneinfo


NAME_SEPARATOR = "!"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(ms|s|m|h|d)')
_DURATION_UNITS = {
    'ms': 0.001,
    's': 1,
    'm': 60,
    'h': 3600,
    'd': 86400,
}


class SchedulingError(Exception):
    """Base exception for the scheduling core."""
    pass


class ScheduleConfigurationError(SchedulingError):
    """Exception raised when a schedule is misconfigured and cannot be activated."""
    pass


def compose_schedule_name(host_name: str, service_name: str, short_name: str) -> str:
    """Compose the unique schedule name from its entity and short name.

    Examples:
        >>> compose_schedule_name("h1", "", "maint1")
        'h1!maint1'
        >>> compose_schedule_name("h1", "svc1", "maint1")
        'h1!svc1!maint1'
    """
    parts = [host_name]
    if service_name:
        parts.append(service_name)
    parts.append(short_name)
    return NAME_SEPARATOR.join(parts)


def parse_duration(value: Any) -> timedelta:
    """Parse a duration given as seconds or as a string like ``1h30m``."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError("duration must be a number of seconds or a duration string")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if not isinstance(value, str):
        raise ValueError(f"Unsupported duration value: {value!r}")

    text = value.strip().lower()
    if not text:
        raise ValueError("duration must not be empty")

    try:
        return timedelta(seconds=float(text))
    except ValueError:
        pass

    if _DURATION_PART.sub('', text):
        raise ValueError(f"Invalid duration '{value}'. Use seconds or e.g. '90s', '30m', '1h30m', '2d'")

    seconds = sum(float(amount) * _DURATION_UNITS[unit] for amount, unit in _DURATION_PART.findall(text))
    return timedelta(seconds=seconds)


class EntityKey(BaseModel):
    """Reference to a monitored entity: a host, or a service on a host."""

    model_config = ConfigDict(frozen=True)

    host_name: str
    service_name: str = ""

    @property
    def is_service(self) -> bool:
        return bool(self.service_name)

    def __str__(self) -> str:
        if self.service_name:
            return f"{self.host_name}{NAME_SEPARATOR}{self.service_name}"
        return self.host_name


@dataclass(frozen=True)
class Segment:
    """A concrete [begin, end) interval resolved from a recurring range."""

    begin: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.begin

    @property
    def is_empty(self) -> bool:
        return self.begin == EPOCH and self.end == EPOCH

    def __bool__(self) -> bool:
        return not self.is_empty

    def __str__(self) -> str:
        if self.is_empty:
            return "<no segment>"
        return f"{self.begin.isoformat()} -> {self.end.isoformat()}"


# Returned when no upcoming segment could be resolved
NO_SEGMENT = Segment(begin=EPOCH, end=EPOCH)


class ScheduleState(str, Enum):
    """Runtime state of a registered schedule."""
    ACTIVE = "active"          # Reconciled on every tick
    ERROR = "error"            # Configuration error, no longer reconciled
    DISABLED = "disabled"      # Registered but switched off


class Schedule(BaseModel):
    """Recurring maintenance window definition attached to one entity."""

    host_name: str = Field(description="Host the schedule is attached to")

    service_name: str = Field(
        default="",
        description="Service short name on the host (empty for host schedules)"
    )

    short_name: str = Field(description="Schedule name, unique per entity")

    ranges: Dict[str, str] = Field(
        default_factory=dict,
        description="Recurring day rule -> time-of-day ranges"
    )

    author: str = Field(default="", description="Author copied into created records")

    comment: str = Field(default="", description="Comment copied into created records")

    fixed: bool = Field(
        default=True,
        description="Fixed records span begin..end; flexible ones start on trigger"
    )

    duration: timedelta = Field(
        default=timedelta(0),
        description="Length of a flexible record once triggered"
    )

    timezone: str = Field(
        default='UTC',
        description="IANA timezone identifier the ranges are evaluated in"
    )

    enabled: bool = Field(default=True, description="Whether the schedule is enabled")

    @field_validator('host_name', 'short_name')
    @classmethod
    def validate_required_name(cls, v):
        """Validate name parts are present and separator free."""
        if not v or not v.strip():
            raise ValueError("must not be empty")
        if NAME_SEPARATOR in v:
            raise ValueError(f"must not contain '{NAME_SEPARATOR}'")
        return v

    @field_validator('service_name')
    @classmethod
    def validate_service_name(cls, v):
        if NAME_SEPARATOR in v:
            raise ValueError(f"must not contain '{NAME_SEPARATOR}'")
        return v

    @field_validator('duration', mode='before')
    @classmethod
    def validate_duration(cls, v):
        """Accept seconds or duration strings."""
        duration = parse_duration(v)
        if duration < timedelta(0):
            raise ValueError("duration must not be negative")
        return duration

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v):
        """Validate IANA timezone identifier."""
        try:
            zoneinfo.ZoneInfo(v)
        except (zoneinfo.ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Invalid timezone '{v}'. Must be valid IANA identifier")
        return v

    @property
    def name(self) -> str:
        """Unique schedule name, ``host[!service]!short_name``."""
        return compose_schedule_name(self.host_name, self.service_name, self.short_name)

    @property
    def entity_key(self) -> EntityKey:
        return EntityKey(host_name=self.host_name, service_name=self.service_name)


class MaintenanceRecord(BaseModel):
    """A concrete maintenance window on an entity, owned by a record store."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="Unique record ID")

    entity_key: EntityKey = Field(description="Entity the record applies to")

    author: str = Field(default="")

    comment: str = Field(default="")

    start_time: datetime = Field(description="Start of the window")

    end_time: datetime = Field(description="End of the window")

    fixed: bool = Field(default=True)

    duration: timedelta = Field(default=timedelta(0))

    triggered_by: Optional[str] = Field(
        default=None,
        description="Record that triggers this one (flexible records)"
    )

    scheduled_by: str = Field(
        default="",
        description="Name of the schedule that created the record (empty if manual)"
    )

    config_owner: str = Field(
        default="",
        description="Schedule that owns the record's configuration"
    )

    entry_time: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the record was created"
    )

    @model_validator(mode='after')
    def validate_window(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    def is_pending(self, now: datetime) -> bool:
        """Check whether the window has not started yet."""
        return self.start_time >= now

    def is_expired(self, now: datetime) -> bool:
        return self.end_time <= now

    def is_owned_by(self, schedule_name: str) -> bool:
        return bool(schedule_name) and self.scheduled_by == schedule_name
