"""Periodic dispatcher that keeps every active schedule reconciled."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .models import Schedule, ScheduleConfigurationError, ScheduleState
from .reconciler import ScheduleReconciler, ReconcileResult, ReconcileOutcome
from .metrics import SchedulingMetrics


logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL_SECONDS = 60


@dataclass
class ScheduleHandle:
    """Registry entry for a schedule known to the engine."""
    schedule: Schedule
    state: ScheduleState = ScheduleState.ACTIVE
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    reconciliations: int = 0
    records_created: int = 0
    consecutive_failures: int = 0
    last_result: Optional[ReconcileResult] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.schedule.name


@dataclass
class EngineStats:
    """Statistics for the schedule engine."""
    total_schedules: int = 0
    active_schedules: int = 0
    error_schedules: int = 0
    total_ticks: int = 0
    total_reconciliations: int = 0
    records_created: int = 0
    reconcile_failures: int = 0
    last_tick_time: Optional[datetime] = None
    average_tick_duration_ms: float = 0.0


class ScheduleEngine:
    """Owns the schedule registry and the recurring reconciliation timer."""

    def __init__(
        self,
        reconciler: ScheduleReconciler,
        metrics: Optional[SchedulingMetrics] = None,
        tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS
    ):
        """Initialize the schedule engine.

        Args:
            reconciler: Per-schedule reconciliation
            metrics: Optional metrics façade
            tick_interval_seconds: Delay between ticks
        """
        self.reconciler = reconciler
        self.metrics = metrics
        self.tick_interval_seconds = tick_interval_seconds

        self._schedules: Dict[str, ScheduleHandle] = {}

        self._running = False
        self._engine_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

        self._stats = EngineStats()
        self._tick_times: List[float] = []
        self._max_tick_samples = 100

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the recurring tick; a second call is a no-op."""
        if self._running:
            logger.warning("Schedule engine is already running")
            return

        logger.info("Starting schedule engine")
        self._running = True
        self._shutdown_event.clear()
        self._engine_task = asyncio.create_task(self._engine_loop())

        logger.info(f"Schedule engine started (tick interval: {self.tick_interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the recurring tick."""
        if not self._running:
            return

        logger.info("Stopping schedule engine")
        self._running = False
        self._shutdown_event.set()

        if self._engine_task:
            self._engine_task.cancel()
            try:
                await self._engine_task
            except asyncio.CancelledError:
                pass
            self._engine_task = None

        logger.info("Schedule engine stopped")

    def register_schedule(self, schedule: Schedule) -> ScheduleHandle:
        """Add a schedule to the registry without reconciling it."""
        if schedule.name in self._schedules:
            logger.warning(f"Schedule {schedule.name} already registered, updating")

        handle = ScheduleHandle(
            schedule=schedule,
            state=ScheduleState.ACTIVE if schedule.enabled else ScheduleState.DISABLED
        )
        self._schedules[schedule.name] = handle
        self._update_schedule_stats()

        logger.info(f"Registered schedule {schedule.name} ({len(schedule.ranges)} ranges)")
        return handle

    def unregister_schedule(self, schedule_name: str) -> bool:
        """Remove a schedule; records it already created are left alone."""
        if schedule_name not in self._schedules:
            return False

        del self._schedules[schedule_name]
        self._update_schedule_stats()

        logger.info(f"Unregistered schedule {schedule_name}")
        return True

    def get_schedule(self, schedule_name: str) -> Optional[ScheduleHandle]:
        return self._schedules.get(schedule_name)

    def list_schedules(self) -> List[ScheduleHandle]:
        return list(self._schedules.values())

    def get_stats(self) -> EngineStats:
        return self._stats

    async def activate(self, schedule: Schedule) -> Optional[ReconcileResult]:
        """Register a schedule and reconcile it immediately.

        Failures other than configuration errors are recorded on the handle
        and retried on the next tick.

        Returns:
            Result of the first reconciliation (None for disabled schedules
            or when the first attempt failed)

        Raises:
            ScheduleConfigurationError: If the schedule cannot be reconciled
        """
        handle = self.register_schedule(schedule)
        if handle.state != ScheduleState.ACTIVE:
            return None

        try:
            return await self._reconcile_handle(handle)
        except ScheduleConfigurationError as e:
            self._mark_error(handle, e)
            raise
        except Exception as e:
            self._handle_schedule_error(handle, e)
            return None

    async def tick(self) -> List[ReconcileResult]:
        """Reconcile every active schedule once.

        Failures are isolated per schedule and never propagate.
        """
        tick_start = time.monotonic()
        self._stats.last_tick_time = datetime.now(timezone.utc)
        self._stats.total_ticks += 1

        handles = [h for h in self._schedules.values() if h.state == ScheduleState.ACTIVE]
        if handles:
            logger.debug(f"Reconciling {len(handles)} schedules")

        outcomes = await asyncio.gather(
            *(self._reconcile_handle(handle) for handle in handles),
            return_exceptions=True
        )

        results = []
        for handle, outcome in zip(handles, outcomes):
            if isinstance(outcome, ReconcileResult):
                results.append(outcome)
            elif isinstance(outcome, ScheduleConfigurationError):
                self._mark_error(handle, outcome)
            elif isinstance(outcome, Exception):
                self._handle_schedule_error(handle, outcome)
            else:
                raise outcome

        tick_duration = (time.monotonic() - tick_start) * 1000
        self._tick_times.append(tick_duration)
        if len(self._tick_times) > self._max_tick_samples:
            self._tick_times.pop(0)
        self._stats.average_tick_duration_ms = sum(self._tick_times) / len(self._tick_times)

        if self.metrics:
            self.metrics.record_tick_duration(tick_duration)

        return results

    async def _engine_loop(self) -> None:
        """Tick until stopped."""
        logger.info("Starting schedule engine loop")

        while self._running:
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.tick_interval_seconds
                )
                break  # Shutdown requested
            except asyncio.TimeoutError:
                pass

            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in engine loop: {e}", exc_info=True)

    async def _reconcile_handle(self, handle: ScheduleHandle) -> ReconcileResult:
        result = await self.reconciler.reconcile(handle.schedule)

        handle.reconciliations += 1
        handle.consecutive_failures = 0
        handle.last_result = result
        self._stats.total_reconciliations += 1

        if result.outcome == ReconcileOutcome.CREATED:
            handle.records_created += 1
            self._stats.records_created += 1
            if self.metrics:
                self.metrics.increment_records_created()

        if self.metrics:
            self.metrics.increment_reconciliations(result.outcome.value)

        return result

    def _mark_error(self, handle: ScheduleHandle, error: Exception) -> None:
        """Take a misconfigured schedule out of rotation."""
        handle.state = ScheduleState.ERROR
        handle.last_error = str(error)
        handle.last_error_at = datetime.now(timezone.utc)
        self._stats.reconcile_failures += 1
        self._update_schedule_stats()

        if self.metrics:
            self.metrics.record_schedule_error(type(error).__name__)

        logger.error(f"Schedule {handle.name} misconfigured, no longer reconciled: {error}")

    def _handle_schedule_error(self, handle: ScheduleHandle, error: Exception) -> None:
        """Record a failure that will be retried on the next tick."""
        handle.consecutive_failures += 1
        handle.last_error = str(error)
        handle.last_error_at = datetime.now(timezone.utc)
        self._stats.reconcile_failures += 1

        if self.metrics:
            self.metrics.record_schedule_error(type(error).__name__)

        logger.error(
            f"Schedule {handle.name} error #{handle.consecutive_failures}: {error}",
            exc_info=error
        )

    def _update_schedule_stats(self) -> None:
        self._stats.total_schedules = len(self._schedules)
        self._stats.active_schedules = sum(
            1 for h in self._schedules.values() if h.state == ScheduleState.ACTIVE
        )
        self._stats.error_schedules = sum(
            1 for h in self._schedules.values() if h.state == ScheduleState.ERROR
        )

        if self.metrics:
            for state in ScheduleState:
                count = sum(1 for h in self._schedules.values() if h.state == state)
                self.metrics.set_registered_schedules(count, state.value)
