"""Tests for threshold alerts and the health verdict."""

from handoff.monitoring import (
    HealthConfig,
    HealthStatus,
    MetricThreshold,
    PerformanceMonitor,
    Severity,
    check_thresholds,
    collect_metrics,
    health_status,
)


def monitor_with(operation: str, *durations: float, failures: int = 0) -> PerformanceMonitor:
    monitor = PerformanceMonitor()
    for ms in durations:
        monitor.record(operation, ms)
    for _ in range(failures):
        monitor.record(operation, 1.0, False)
    return monitor


class TestThresholds:
    def test_quiet_system_is_healthy(self):
        monitor = monitor_with("conversation_queue", 1.0, 2.0, 3.0)
        alerts = check_thresholds(monitor, {"queued": 3})
        assert alerts == []
        assert health_status(alerts) == HealthStatus.HEALTHY

    def test_slow_queue_is_warning(self):
        monitor = monitor_with("conversation_queue", *[15.0] * 10)
        [alert] = check_thresholds(monitor)
        assert alert.severity == Severity.WARNING
        assert (alert.operation, alert.metric, alert.threshold) == ("conversation_queue", "p95", 10)
        assert health_status([alert]) == HealthStatus.WARNING

    def test_critical_takes_precedence(self):
        monitor = monitor_with("embedding.generate", *[800.0] * 10)
        [alert] = check_thresholds(monitor)
        assert alert.severity == Severity.CRITICAL
        assert alert.threshold == 500

    def test_low_success_rate(self):
        # 8 of 10 succeed: 80% is below the critical 90%
        monitor = monitor_with("embedding.generate", *[5.0] * 8, failures=2)
        [alert] = check_thresholds(monitor)
        assert alert.metric == "success_rate"
        assert alert.severity == Severity.CRITICAL

    def test_operations_without_data_are_skipped(self):
        assert check_thresholds(PerformanceMonitor()) == []

    def test_custom_thresholds(self):
        config = HealthConfig(thresholds=[MetricThreshold("knowledge_search", "avg", warning=5, critical=50)])
        monitor = monitor_with("knowledge_search", 10.0, 20.0)
        [alert] = check_thresholds(monitor, config=config)
        assert alert.value == 15.0
        assert alert.severity == Severity.WARNING


class TestQueueAlerts:
    def test_queue_depth(self):
        monitor = PerformanceMonitor()
        assert check_thresholds(monitor, {"queued": 100}) == []

        [warning] = check_thresholds(monitor, {"queued": 101})
        assert warning.severity == Severity.WARNING
        assert warning.operation == "storage_queue"

        [critical] = check_thresholds(monitor, {"queued": 501})
        assert critical.severity == Severity.CRITICAL

    def test_set_aside_rows_warn(self):
        [alert] = check_thresholds(PerformanceMonitor(), {"queued": 0, "set_aside": 2})
        assert alert.metric == "set_aside"
        assert alert.severity == Severity.WARNING


class TestCollectMetrics:
    def test_snapshot(self):
        monitor = monitor_with("conversation_queue", 1.0)
        snapshot = collect_metrics(monitor, {"queued": 600}, {"size": 4, "hit_rate": 50.0})

        assert snapshot["health"] == "critical"
        assert snapshot["alerts"][0]["message"] == "Storage queue size is 600 (critical: > 500)"
        assert snapshot["performance"]["conversation_queue"]["count"] == 1
        assert snapshot["cache"]["size"] == 4
