"""Health checks - threshold alerts over monitor stats and queue depth.

Alerts are computed on demand from a PerformanceMonitor snapshot and
the optimizer's counters; nothing here keeps state between calls.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from handoff.monitoring.performance import PerformanceMonitor


class Severity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class MetricThreshold:
    """Warning and critical limits for one metric of one operation."""
    operation: str
    metric: str                       # p50 | p95 | p99 | avg | success_rate
    warning: float
    critical: float
    direction: str = "above"          # above | below

    def breached(self, value: float, limit: float) -> bool:
        return value > limit if self.direction == "above" else value < limit


DEFAULT_THRESHOLDS = [
    # Synchronous enqueue overhead
    MetricThreshold("conversation_queue", "p95", warning=10, critical=20),
    MetricThreshold("embedding.generate", "p95", warning=200, critical=500),
    # Includes embedding the batch, not only the insert
    MetricThreshold("conversation_batch_insert", "p95", warning=2000, critical=5000),
    MetricThreshold("conversation_queue", "success_rate", warning=95, critical=90, direction="below"),
    MetricThreshold("embedding.generate", "success_rate", warning=95, critical=90, direction="below"),
]


@dataclass
class HealthConfig:
    """Alert thresholds."""
    thresholds: list[MetricThreshold] = field(default_factory=lambda: list(DEFAULT_THRESHOLDS))
    queue_warning: int = 100          # pending conversations
    queue_critical: int = 500


@dataclass
class Alert:
    severity: Severity
    operation: str
    metric: str
    value: float
    threshold: float
    message: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "operation": self.operation,
            "metric": self.metric,
            "value": round(self.value, 2),
            "threshold": self.threshold,
            "message": self.message,
            "timestamp": self.timestamp,
        }


def check_thresholds(
    monitor: PerformanceMonitor,
    storage_stats: dict[str, Any] | None = None,
    config: HealthConfig | None = None,
) -> list[Alert]:
    """Compare current stats with the configured limits.

    Operations with no observations yet are skipped. At most one alert
    is raised per threshold, critical taking precedence.
    """
    config = config or HealthConfig()
    stats = monitor.all_stats()
    alerts: list[Alert] = []

    for threshold in config.thresholds:
        op_stats = stats.get(threshold.operation)
        if op_stats is None:
            continue
        value = getattr(op_stats, threshold.metric, None)
        if value is None:
            continue
        for severity, limit in (
            (Severity.CRITICAL, threshold.critical),
            (Severity.WARNING, threshold.warning),
        ):
            if threshold.breached(value, limit):
                alerts.append(Alert(
                    severity=severity,
                    operation=threshold.operation,
                    metric=threshold.metric,
                    value=value,
                    threshold=limit,
                    message=f"{threshold.operation} {threshold.metric} is {value:.2f} "
                            f"({severity.value}: {limit})",
                ))
                break

    if storage_stats:
        queued = storage_stats.get("queued", 0)
        for severity, limit in (
            (Severity.CRITICAL, config.queue_critical),
            (Severity.WARNING, config.queue_warning),
        ):
            if queued > limit:
                alerts.append(Alert(
                    severity=severity,
                    operation="storage_queue",
                    metric="queued",
                    value=queued,
                    threshold=limit,
                    message=f"Storage queue size is {queued} ({severity.value}: > {limit})",
                ))
                break

        set_aside = storage_stats.get("set_aside", 0)
        if set_aside:
            alerts.append(Alert(
                severity=Severity.WARNING,
                operation="storage_queue",
                metric="set_aside",
                value=set_aside,
                threshold=0,
                message=f"{set_aside} conversations were refused by the store and set aside",
            ))

    return alerts


def health_status(alerts: list[Alert]) -> HealthStatus:
    if any(a.severity == Severity.CRITICAL for a in alerts):
        return HealthStatus.CRITICAL
    if any(a.severity == Severity.WARNING for a in alerts):
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def collect_metrics(
    monitor: PerformanceMonitor,
    storage_stats: dict[str, Any],
    cache_stats: dict[str, Any],
    config: HealthConfig | None = None,
) -> dict[str, Any]:
    """One snapshot of everything an operator dashboard shows."""
    alerts = check_thresholds(monitor, storage_stats, config)
    return {
        "timestamp": time.time(),
        "health": health_status(alerts).value,
        "alerts": [a.to_dict() for a in alerts],
        "performance": {name: s.to_dict() for name, s in monitor.all_stats().items()},
        "storage": dict(storage_stats),
        "cache": dict(cache_stats),
    }
