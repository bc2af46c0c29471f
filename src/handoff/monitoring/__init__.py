"""Latency and success monitoring, and health alerts derived from it."""

from handoff.monitoring.health import (
    Alert,
    HealthConfig,
    HealthStatus,
    MetricThreshold,
    Severity,
    check_thresholds,
    collect_metrics,
    health_status,
)
from handoff.monitoring.performance import (
    MonitorConfig,
    PerformanceMonitor,
    PerformanceStats,
)

__all__ = [
    "Alert",
    "HealthConfig",
    "HealthStatus",
    "MetricThreshold",
    "MonitorConfig",
    "PerformanceMonitor",
    "PerformanceStats",
    "Severity",
    "check_thresholds",
    "collect_metrics",
    "health_status",
]
