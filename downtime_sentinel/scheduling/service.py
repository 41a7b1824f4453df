"""Scheduling service lifecycle management and orchestration."""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Any, Union

from .clock import Clock, SystemClock
from .config import load_configuration
from .directory import EntityDirectory, InMemoryEntityDirectory
from .dispatcher import ScheduleEngine, EngineStats, DEFAULT_TICK_INTERVAL_SECONDS
from .locks import ConcurrencyManager, create_concurrency_manager
from .metrics import SchedulingMetrics, create_scheduling_metrics
from .models import Schedule, ScheduleConfigurationError
from .ranges import RangeResolver, LegacyRangeResolver
from .reconciler import ScheduleReconciler, ReconcileResult, DEFAULT_COLLABORATOR_TIMEOUT_SECONDS
from .segments import SegmentFinder
from .store import MaintenanceRecordStore, InMemoryMaintenanceRecordStore
from .validation import RangeValidator

logger = logging.getLogger(__name__)


class ServiceStatus(Enum):
    """Service lifecycle status."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceConfig:
    """Configuration for the scheduling service."""

    # Engine configuration
    tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS
    collaborator_timeout_seconds: float = DEFAULT_COLLABORATOR_TIMEOUT_SECONDS

    # Concurrency configuration
    concurrency_backend_type: str = "memory"  # "memory" or "redis"
    redis_url: Optional[str] = None
    default_lock_timeout_seconds: float = 300
    lock_wait_timeout_seconds: float = 5
    lock_cleanup_interval_seconds: float = 300

    # Schedule loading
    schedule_config_paths: List[str] = field(default_factory=list)

    # Housekeeping of records whose window has ended
    record_purge_interval_seconds: float = 3600

    metrics_enabled: bool = True


@dataclass
class ServiceHealth:
    """Health status of the scheduling service."""
    status: ServiceStatus
    uptime_seconds: float
    schedules_active: int
    schedules_error: int
    schedules_total: int
    records_created: int
    last_error: Optional[str] = None
    component_status: Dict[str, str] = field(default_factory=dict)


class SchedulingService:
    """Wires the directory, store, locks and engine into one lifecycle."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        directory: Optional[EntityDirectory] = None,
        store: Optional[MaintenanceRecordStore] = None,
        resolver: Optional[RangeResolver] = None,
        clock: Optional[Clock] = None
    ):
        """Initialize the scheduling service.

        Args:
            config: Service configuration
            directory: Entity directory (default: in-memory, filled from config files)
            store: Maintenance record store (default: in-memory)
            resolver: Range resolver (default: legacy range grammar)
            clock: Time source (default: system clock)
        """
        self.config = config or ServiceConfig()
        self.directory = directory or InMemoryEntityDirectory()
        self.store = store or InMemoryMaintenanceRecordStore()
        self.resolver = resolver or LegacyRangeResolver()
        self.clock = clock or SystemClock()
        self.validator = RangeValidator(self.resolver)

        self.metrics: Optional[SchedulingMetrics] = (
            create_scheduling_metrics() if self.config.metrics_enabled else None
        )
        self.concurrency_manager: ConcurrencyManager = create_concurrency_manager(
            backend_type=self.config.concurrency_backend_type,
            redis_url=self.config.redis_url or "redis://localhost:6379",
            default_timeout_seconds=self.config.default_lock_timeout_seconds,
            wait_timeout_seconds=self.config.lock_wait_timeout_seconds,
            cleanup_interval_seconds=self.config.lock_cleanup_interval_seconds
        )
        self.reconciler = ScheduleReconciler(
            directory=self.directory,
            store=self.store,
            segment_finder=SegmentFinder(self.resolver),
            concurrency_manager=self.concurrency_manager,
            clock=self.clock,
            collaborator_timeout_seconds=self.config.collaborator_timeout_seconds
        )
        self.engine = ScheduleEngine(
            reconciler=self.reconciler,
            metrics=self.metrics,
            tick_interval_seconds=self.config.tick_interval_seconds
        )

        self._status = ServiceStatus.STOPPED
        self._start_time: Optional[float] = None
        self._last_error: Optional[str] = None
        self._purge_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Load configured files, activate their schedules and start ticking."""
        if self._status != ServiceStatus.STOPPED:
            raise RuntimeError(f"Cannot start service in status {self._status}")

        logger.info("Starting scheduling service")
        self._status = ServiceStatus.STARTING

        try:
            await self.concurrency_manager.start()

            for config_path in self.config.schedule_config_paths:
                await self.load_schedules_from_file(config_path)

            await self.engine.start()
            if isinstance(self.store, InMemoryMaintenanceRecordStore):
                self._purge_task = asyncio.create_task(self._purge_loop())

            self._status = ServiceStatus.RUNNING
            self._start_time = asyncio.get_running_loop().time()

            logger.info("Scheduling service started successfully")

        except Exception as e:
            self._last_error = str(e)
            self._status = ServiceStatus.ERROR
            logger.error(f"Failed to start scheduling service: {e}", exc_info=True)

            await self._cleanup_components()
            raise

    async def stop(self) -> None:
        """Stop the scheduling service."""
        if self._status == ServiceStatus.STOPPED:
            return

        logger.info("Stopping scheduling service")
        self._status = ServiceStatus.STOPPING

        try:
            await self._cleanup_components()
            self._status = ServiceStatus.STOPPED
            logger.info("Scheduling service stopped")

        except Exception as e:
            self._last_error = str(e)
            self._status = ServiceStatus.ERROR
            logger.error(f"Error stopping scheduling service: {e}", exc_info=True)
            raise

    async def accept_schedule(self, schedule: Schedule) -> Optional[ReconcileResult]:
        """Validate a schedule and activate it.

        Ranges are checked first, then the referenced entity. Only a schedule
        passing both is registered and reconciled.

        Raises:
            ScheduleConfigurationError: If the schedule is rejected
        """
        result = self.validator.validate(
            schedule.ranges,
            reference=self.clock.now(),
            timezone_str=schedule.timezone
        )
        if not result:
            logger.error(f"Rejected schedule {schedule.name}: {result.error}")
            result.raise_for_error()

        await self.directory.require(schedule.entity_key)

        return await self.engine.activate(schedule)

    async def remove_schedule(self, schedule_name: str) -> bool:
        """Stop reconciling a schedule; its existing records are kept."""
        result = self.engine.unregister_schedule(schedule_name)
        if result:
            logger.info(f"Removed schedule {schedule_name}")
        return result

    async def load_schedules_from_file(self, config_path: Union[str, Path]) -> List[str]:
        """Load one configuration file and accept its schedules.

        Rejected schedules are logged and skipped.

        Returns:
            Names of the accepted schedules

        Raises:
            ConfigLoadError: If the file cannot be loaded
        """
        config = load_configuration(config_path)
        if isinstance(self.directory, InMemoryEntityDirectory):
            config.populate_directory(self.directory)

        accepted = []
        for schedule in config.schedules:
            try:
                await self.accept_schedule(schedule)
            except ScheduleConfigurationError as e:
                self._last_error = str(e)
                logger.error(f"Schedule {schedule.name} from {config_path} not activated: {e}")
                continue
            accepted.append(schedule.name)

        logger.info(f"Activated {len(accepted)}/{len(config.schedules)} schedules from {config_path}")
        return accepted

    async def purge_expired_records(self) -> int:
        """Drop in-memory records whose window has ended.

        Returns:
            Number of records removed (always 0 for external stores)
        """
        if not isinstance(self.store, InMemoryMaintenanceRecordStore):
            return 0
        return await self.store.purge_expired(self.clock.now())

    def get_status(self) -> ServiceStatus:
        return self._status

    def get_health(self) -> ServiceHealth:
        """Get service health information."""
        uptime = 0.0
        if self._start_time is not None and self._status == ServiceStatus.RUNNING:
            uptime = asyncio.get_running_loop().time() - self._start_time

        stats = self.engine.get_stats()
        component_status = {
            "engine": "running" if self.engine.is_running else "stopped",
            "concurrency": self.config.concurrency_backend_type,
            "metrics": "enabled" if self.metrics else "disabled",
        }

        return ServiceHealth(
            status=self._status,
            uptime_seconds=uptime,
            schedules_active=stats.active_schedules,
            schedules_error=stats.error_schedules,
            schedules_total=stats.total_schedules,
            records_created=stats.records_created,
            last_error=self._last_error,
            component_status=component_status
        )

    def get_engine_stats(self) -> EngineStats:
        return self.engine.get_stats()

    def list_schedules(self) -> List[Dict[str, Any]]:
        """List all schedules with their current state."""
        schedules = []
        for handle in self.engine.list_schedules():
            last_result = handle.last_result
            schedules.append({
                "name": handle.name,
                "entity": str(handle.schedule.entity_key),
                "timezone": handle.schedule.timezone,
                "enabled": handle.schedule.enabled,
                "state": handle.state.value,
                "records_created": handle.records_created,
                "last_outcome": last_result.outcome.value if last_result else None,
                "next_window": str(last_result.segment) if last_result and last_result.segment else None,
                "consecutive_failures": handle.consecutive_failures,
                "last_error": handle.last_error
            })

        return schedules

    async def _purge_loop(self) -> None:
        """Background task removing expired records from the in-memory store."""
        while True:
            try:
                await asyncio.sleep(self.config.record_purge_interval_seconds)
                await self.purge_expired_records()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error purging expired records: {e}")

    async def _cleanup_components(self) -> None:
        if self._purge_task:
            self._purge_task.cancel()
            try:
                await self._purge_task
            except asyncio.CancelledError:
                pass
            self._purge_task = None

        await self.engine.stop()
        await self.concurrency_manager.stop()
