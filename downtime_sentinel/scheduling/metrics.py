"""Metrics collection for the maintenance scheduler."""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Any, Tuple


logger = logging.getLogger(__name__)


@dataclass
class MetricValue:
    """A metric sample with metadata."""
    value: float
    timestamp: datetime
    labels: Dict[str, str] = field(default_factory=dict)


class MetricsCollector:
    """Collects counters, gauges and timer samples in memory."""

    def __init__(self, max_samples_per_metric: int = 10000):
        """Initialize metrics collector.

        Args:
            max_samples_per_metric: Maximum timer samples to keep per metric
        """
        self.max_samples_per_metric = max_samples_per_metric

        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}
        self._timers: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_samples_per_metric))
        self._metric_descriptions: Dict[str, str] = {}

    def increment_counter(self, name: str, value: float = 1.0, labels: Optional[Dict[str, str]] = None, description: Optional[str] = None) -> None:
        """Increment a counter metric."""
        self._counters[self._make_metric_key(name, labels)] += value
        if description:
            self._metric_descriptions[name] = description

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None, description: Optional[str] = None) -> None:
        """Set a gauge metric value."""
        self._gauges[self._make_metric_key(name, labels)] = value
        if description:
            self._metric_descriptions[name] = description

    def record_timer(self, name: str, duration_seconds: float, labels: Optional[Dict[str, str]] = None, description: Optional[str] = None) -> None:
        """Record a timer duration."""
        metric_key = self._make_metric_key(name, labels)
        self._timers[metric_key].append(MetricValue(duration_seconds, datetime.now(timezone.utc), labels or {}))
        if description:
            self._metric_descriptions[name] = description

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        return self._counters.get(self._make_metric_key(name, labels), 0.0)

    def get_gauge(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        return self._gauges.get(self._make_metric_key(name, labels))

    def get_timer_stats(self, name: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, float]:
        """Get timer statistics."""
        values = sorted(mv.value for mv in self._timers.get(self._make_metric_key(name, labels), []))
        if not values:
            return {}

        count = len(values)
        return {
            'count': count,
            'sum': sum(values),
            'min': values[0],
            'max': values[-1],
            'mean': sum(values) / count,
            'p50': values[int(count * 0.5)],
            'p95': values[min(count - 1, int(count * 0.95))],
        }

    def get_all_metrics(self) -> Dict[str, Any]:
        """Get all current metrics."""
        return {
            'counters': dict(self._counters),
            'gauges': dict(self._gauges),
            'timers': {
                metric_key: self.get_timer_stats(*self._parse_metric_key(metric_key))
                for metric_key in self._timers
            },
            'timestamp': datetime.now(timezone.utc).isoformat()
        }

    def export_prometheus_format(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []

        for metric_type, samples in (('counter', self._counters), ('gauge', self._gauges)):
            for metric_key, value in samples.items():
                name, labels = self._parse_metric_key(metric_key)
                if name in self._metric_descriptions:
                    lines.append(f"# HELP {name} {self._metric_descriptions[name]}")
                lines.append(f"# TYPE {name} {metric_type}")
                lines.append(f"{name}{self._format_prometheus_labels(labels)} {value}")

        for metric_key in self._timers:
            name, labels = self._parse_metric_key(metric_key)
            stats = self.get_timer_stats(name, labels)
            if stats:
                labels_str = self._format_prometheus_labels(labels)
                lines.append(f"# TYPE {name} summary")
                lines.append(f"{name}_count{labels_str} {stats['count']}")
                lines.append(f"{name}_sum{labels_str} {stats['sum']}")

        return '\n'.join(lines) + '\n'

    def _make_metric_key(self, name: str, labels: Optional[Dict[str, str]] = None) -> str:
        if not labels:
            return name
        return f"{name}|{','.join(f'{key}={value}' for key, value in sorted(labels.items()))}"

    def _parse_metric_key(self, metric_key: str) -> Tuple[str, Dict[str, str]]:
        if '|' not in metric_key:
            return metric_key, {}

        name, labels_str = metric_key.split('|', 1)
        labels = {}
        for label_pair in labels_str.split(','):
            if '=' in label_pair:
                key, value = label_pair.split('=', 1)
                labels[key] = value
        return name, labels

    def _format_prometheus_labels(self, labels: Dict[str, str]) -> str:
        if not labels:
            return ""

        label_parts = []
        for key, value in sorted(labels.items()):
            # Escape quotes in values
            escaped_value = value.replace('"', '\\"')
            label_parts.append(f'{key}="{escaped_value}"')

        return '{' + ','.join(label_parts) + '}'


class SchedulingMetrics:
    """Pre-defined metrics for the maintenance scheduler."""

    def __init__(self, collector: MetricsCollector):
        self.collector = collector

    def record_tick_duration(self, duration_ms: float) -> None:
        self.collector.record_timer(
            "downtime_scheduler_tick_duration_seconds",
            duration_ms / 1000.0,
            description="Time spent reconciling all schedules in one tick"
        )

    def increment_reconciliations(self, outcome: str) -> None:
        self.collector.increment_counter(
            "downtime_scheduler_reconciliations_total",
            labels={"outcome": outcome},
            description="Schedule reconciliations by outcome"
        )

    def increment_records_created(self) -> None:
        self.collector.increment_counter(
            "downtime_scheduler_records_created_total",
            description="Maintenance records created by schedules"
        )

    def record_schedule_error(self, error_type: str) -> None:
        self.collector.increment_counter(
            "downtime_scheduler_errors_total",
            labels={"error_type": error_type},
            description="Failed schedule reconciliations by error type"
        )

    def set_registered_schedules(self, count: int, state: str) -> None:
        self.collector.set_gauge(
            "downtime_scheduler_schedules",
            count,
            labels={"state": state},
            description="Registered schedules by state"
        )


def create_scheduling_metrics(max_samples_per_metric: int = 10000) -> SchedulingMetrics:
    """Create a metrics façade backed by a fresh collector."""
    return SchedulingMetrics(MetricsCollector(max_samples_per_metric=max_samples_per_metric))
