"""Recurring maintenance window scheduling.

This package turns recurring range definitions into concrete maintenance
records, one upcoming window at a time:
- Range grammar parsing and resolution with timezone support
- Next-segment selection across all ranges of a schedule
- Idempotent per-schedule reconciliation under distributed locks
- Periodic dispatching with per-schedule failure isolation
- Configuration-time validation of ranges and entity references
"""

from .models import (
    Schedule,
    ScheduleState,
    Segment,
    NO_SEGMENT,
    EntityKey,
    MaintenanceRecord,
    SchedulingError,
    ScheduleConfigurationError,
    compose_schedule_name,
    parse_duration,
)

from .clock import (
    Clock,
    SystemClock,
    ManualClock,
)

from .ranges import (
    RangeResolver,
    LegacyRangeResolver,
    RangeParseError,
    TimeRange,
    parse_day_rule,
    parse_time_ranges,
)

from .segments import SegmentFinder

from .validation import (
    RangeValidator,
    ValidationResult,
    FieldError,
    RangeValidationError,
)

from .directory import (
    Entity,
    EntityDirectory,
    InMemoryEntityDirectory,
    EntityNotFoundError,
)

from .store import (
    MaintenanceRecordStore,
    InMemoryMaintenanceRecordStore,
    RecordNotFoundError,
)

from .locks import (
    ConcurrencyManager,
    LockInfo,
    LockError,
    LockTimeoutError,
    create_concurrency_manager,
)

from .reconciler import (
    ScheduleReconciler,
    ReconcileResult,
    ReconcileOutcome,
)

from .dispatcher import (
    ScheduleEngine,
    ScheduleHandle,
    EngineStats,
)

from .config import (
    DowntimeConfig,
    HostConfig,
    ConfigLoadError,
    load_configuration,
)

from .service import (
    SchedulingService,
    ServiceConfig,
    ServiceStatus,
)

__all__ = [
    # Models
    "Schedule",
    "ScheduleState",
    "Segment",
    "NO_SEGMENT",
    "EntityKey",
    "MaintenanceRecord",
    "SchedulingError",
    "ScheduleConfigurationError",
    "compose_schedule_name",
    "parse_duration",

    # Time
    "Clock",
    "SystemClock",
    "ManualClock",

    # Range resolution
    "RangeResolver",
    "LegacyRangeResolver",
    "RangeParseError",
    "TimeRange",
    "parse_day_rule",
    "parse_time_ranges",
    "SegmentFinder",

    # Validation
    "RangeValidator",
    "ValidationResult",
    "FieldError",
    "RangeValidationError",

    # Collaborators
    "Entity",
    "EntityDirectory",
    "InMemoryEntityDirectory",
    "EntityNotFoundError",
    "MaintenanceRecordStore",
    "InMemoryMaintenanceRecordStore",
    "RecordNotFoundError",

    # Concurrency control
    "ConcurrencyManager",
    "LockInfo",
    "LockError",
    "LockTimeoutError",
    "create_concurrency_manager",

    # Reconciliation and dispatching
    "ScheduleReconciler",
    "ReconcileResult",
    "ReconcileOutcome",
    "ScheduleEngine",
    "ScheduleHandle",
    "EngineStats",

    # Configuration and service
    "DowntimeConfig",
    "HostConfig",
    "ConfigLoadError",
    "load_configuration",
    "SchedulingService",
    "ServiceConfig",
    "ServiceStatus",
]
