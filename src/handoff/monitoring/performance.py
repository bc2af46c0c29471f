"""Performance Monitor - rolling-window latency and success tracking.

Every other component reports into this. Recording is best-effort:
nothing here may raise into a caller's critical path.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

from rich.table import Table


logger = logging.getLogger(__name__)


@dataclass
class MonitorConfig:
    """Configuration for the PerformanceMonitor."""
    window_size: int = 1000           # observations kept per operation


@dataclass
class Observation:
    duration_ms: float
    success: bool
    timestamp: float


@dataclass
class PerformanceStats:
    """Aggregates over one operation's rolling window."""
    operation: str
    count: int
    p50: float
    p95: float
    p99: float
    success_rate: float               # percent
    avg: float
    min: float
    max: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "count": self.count,
            "p50": round(self.p50, 2),
            "p95": round(self.p95, 2),
            "p99": round(self.p99, 2),
            "success_rate": round(self.success_rate, 2),
            "avg": round(self.avg, 2),
            "min": round(self.min, 2),
            "max": round(self.max, 2),
        }


def percentile(sorted_values: list[float], q: float) -> float:
    """Nearest-rank percentile over an already sorted list."""
    index = min(int(len(sorted_values) * q), len(sorted_values) - 1)
    return sorted_values[index]


class PerformanceMonitor:
    """Per-operation rolling windows plus free-form counters."""

    def __init__(self, config: MonitorConfig | None = None):
        self.config = config or MonitorConfig()
        self._windows: dict[str, deque[Observation]] = {}
        self._counters: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def record(self, operation: str, duration_ms: float, success: bool = True) -> None:
        """Record one observation. Never raises."""
        try:
            obs = Observation(float(duration_ms), bool(success), time.time())
            with self._lock:
                window = self._windows.get(operation)
                if window is None:
                    window = deque(maxlen=self.config.window_size)
                    self._windows[operation] = window
                window.append(obs)
        except Exception as e:
            logger.debug("[Monitor] Dropped observation for %s: %s", operation, e)

    def increment(self, counter: str, amount: int = 1) -> None:
        """Bump a named counter. Never raises."""
        try:
            with self._lock:
                self._counters[counter] += int(amount)
        except Exception as e:
            logger.debug("[Monitor] Dropped counter %s: %s", counter, e)

    @asynccontextmanager
    async def measure(self, operation: str) -> AsyncIterator[None]:
        """Time the enclosed block; a raised exception records a failure."""
        start = time.perf_counter()
        success = True
        try:
            yield
        except BaseException:
            success = False
            raise
        finally:
            self.record(operation, (time.perf_counter() - start) * 1000, success)

    # ==================== Queries ====================

    def stats(self, operation: str) -> PerformanceStats | None:
        """Window aggregates for ``operation``, or None when nothing was recorded."""
        with self._lock:
            window = self._windows.get(operation)
            observations = list(window) if window else []
        if not observations:
            return None

        # sorted() is stable, so equal durations keep insertion order
        durations = sorted(o.duration_ms for o in observations)
        successes = sum(1 for o in observations if o.success)
        count = len(observations)
        return PerformanceStats(
            operation=operation,
            count=count,
            p50=percentile(durations, 0.50),
            p95=percentile(durations, 0.95),
            p99=percentile(durations, 0.99),
            success_rate=successes / count * 100,
            avg=sum(durations) / count,
            min=durations[0],
            max=durations[-1],
        )

    def operations(self) -> list[str]:
        with self._lock:
            return sorted(self._windows)

    def all_stats(self) -> dict[str, PerformanceStats]:
        result = {}
        for name in self.operations():
            stats = self.stats(name)
            if stats is not None:
                result[name] = stats
        return result

    def recent(self, operation: str, n: int = 10) -> list[Observation]:
        with self._lock:
            window = self._windows.get(operation)
            return list(window)[-n:] if window else []

    def counters(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()
            self._counters.clear()

    def summary_table(self) -> Table:
        """Render all operations as a rich table."""
        table = Table(title="Performance")
        for column in ("Operation", "Count", "p50 ms", "p95 ms", "p99 ms", "Success %"):
            table.add_column(column, justify="left" if column == "Operation" else "right")
        for name, s in self.all_stats().items():
            table.add_row(
                name,
                str(s.count),
                f"{s.p50:.1f}",
                f"{s.p95:.1f}",
                f"{s.p99:.1f}",
                f"{s.success_rate:.1f}",
            )
        return table
