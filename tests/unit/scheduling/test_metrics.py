"""Unit tests for scheduler metrics."""

from downtime_sentinel.scheduling.metrics import MetricsCollector, SchedulingMetrics, create_scheduling_metrics


class TestMetricsCollector:
    """Test MetricsCollector."""

    def test_counters_and_gauges(self):
        collector = MetricsCollector()

        collector.increment_counter("runs_total")
        collector.increment_counter("runs_total", 2)
        collector.increment_counter("runs_total", labels={"outcome": "created"})
        collector.set_gauge("schedules", 3, labels={"state": "active"})

        assert collector.get_counter("runs_total") == 3
        assert collector.get_counter("runs_total", {"outcome": "created"}) == 1
        assert collector.get_counter("missing") == 0.0
        assert collector.get_gauge("schedules", {"state": "active"}) == 3
        assert collector.get_gauge("schedules") is None

    def test_timer_stats(self):
        collector = MetricsCollector(max_samples_per_metric=3)
        for value in (4.0, 1.0, 2.0, 3.0):
            collector.record_timer("tick_seconds", value)

        stats = collector.get_timer_stats("tick_seconds")
        assert stats["count"] == 3
        assert stats["min"] == 1.0
        assert stats["max"] == 3.0
        assert collector.get_timer_stats("unknown") == {}

    def test_prometheus_export(self):
        """Test the Prometheus text format."""
        collector = MetricsCollector()
        collector.increment_counter("errors_total", labels={"error_type": 'Bad"Thing'}, description="Errors")
        collector.record_timer("tick_seconds", 0.5)

        output = collector.export_prometheus_format()

        assert "# HELP errors_total Errors" in output
        assert "# TYPE errors_total counter" in output
        assert 'errors_total{error_type="Bad\\"Thing"} 1.0' in output
        assert "tick_seconds_count 1" in output
        assert output.endswith("\n")


class TestSchedulingMetrics:
    """Test the scheduler metrics façade."""

    def test_scheduling_metrics(self):
        metrics = create_scheduling_metrics()
        assert isinstance(metrics, SchedulingMetrics)

        metrics.increment_reconciliations("created")
        metrics.increment_records_created()
        metrics.record_schedule_error("EntityNotFoundError")
        metrics.set_registered_schedules(2, "active")
        metrics.record_tick_duration(250)

        collector = metrics.collector
        assert collector.get_counter("downtime_scheduler_reconciliations_total", {"outcome": "created"}) == 1
        assert collector.get_counter("downtime_scheduler_records_created_total") == 1
        assert collector.get_counter("downtime_scheduler_errors_total", {"error_type": "EntityNotFoundError"}) == 1
        assert collector.get_gauge("downtime_scheduler_schedules", {"state": "active"}) == 2
        assert collector.get_timer_stats("downtime_scheduler_tick_duration_seconds")["sum"] == 0.25
