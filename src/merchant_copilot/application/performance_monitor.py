"""
Performance Monitor

Collects per-turn classification metrics (which layer answered, intent,
confidence, elapsed time) with bounded retention, and summarizes them into
a report for operational monitoring.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

LAYERS = ("cache", "analyzer", "classifier")


@dataclass(frozen=True)
class ClassificationMetric:
    timestamp: float
    layer: str
    query: str
    intent: str
    confidence: float
    execution_time_ms: float


class PerformanceMonitor:
    """
    Args:
        max_metrics: Maximum number of retained metrics (oldest dropped first)
        retention_seconds: Metrics older than this are dropped on report
        clock: Wall-clock time source (injectable for tests)
    """

    def __init__(
        self,
        max_metrics: int = 10000,
        retention_seconds: float = 86400,
        clock: Callable[[], float] = time.time,
    ):
        self.retention_seconds = retention_seconds
        self._metrics: deque[ClassificationMetric] = deque(maxlen=max_metrics)
        self._lock = threading.Lock()
        self._clock = clock
        self.logger = structlog.get_logger().bind(component="performance_monitor")

    def record(
        self,
        layer: str,
        query: str,
        intent: str,
        confidence: float,
        execution_time_ms: float,
    ) -> None:
        if layer not in LAYERS:
            raise ValueError(f"Unknown classification layer: {layer}")
        metric = ClassificationMetric(
            timestamp=self._clock(),
            layer=layer,
            query=query,
            intent=intent,
            confidence=confidence,
            execution_time_ms=execution_time_ms,
        )
        with self._lock:
            self._metrics.append(metric)

    def cleanup(self) -> int:
        cutoff = self._clock() - self.retention_seconds
        with self._lock:
            removed = 0
            while self._metrics and self._metrics[0].timestamp <= cutoff:
                self._metrics.popleft()
                removed += 1
        if removed:
            self.logger.debug("metrics.cleanup", removed=removed)
        return removed

    def report(self, time_range_seconds: Optional[float] = None) -> dict[str, Any]:
        self.cleanup()
        now = self._clock()
        with self._lock:
            metrics = list(self._metrics)
        if time_range_seconds is not None:
            metrics = [m for m in metrics if m.timestamp >= now - time_range_seconds]

        distribution = {layer: 0 for layer in LAYERS}
        for metric in metrics:
            distribution[metric.layer] += 1

        total = len(metrics)
        if total == 0:
            return {
                "total_classifications": 0,
                "layer_distribution": distribution,
                "cache_hit_rate": 0.0,
                "average_confidence": 0.0,
                "average_execution_time_ms": 0.0,
                "time_range": None,
            }

        return {
            "total_classifications": total,
            "layer_distribution": distribution,
            "cache_hit_rate": distribution["cache"] / total,
            "average_confidence": sum(m.confidence for m in metrics) / total,
            "average_execution_time_ms": sum(m.execution_time_ms for m in metrics) / total,
            "time_range": (metrics[0].timestamp, metrics[-1].timestamp),
        }

    def layer_comparison(self) -> list[dict[str, Any]]:
        with self._lock:
            metrics = list(self._metrics)
        comparison = []
        for layer in LAYERS:
            selected = [m for m in metrics if m.layer == layer]
            count = len(selected)
            comparison.append(
                {
                    "layer": layer,
                    "count": count,
                    "average_execution_time_ms": (
                        sum(m.execution_time_ms for m in selected) / count if count else 0.0
                    ),
                    "average_confidence": sum(m.confidence for m in selected) / count if count else 0.0,
                }
            )
        return comparison

    def recent(self, count: int = 100) -> list[ClassificationMetric]:
        with self._lock:
            return list(self._metrics)[-count:]

    def clear(self) -> None:
        with self._lock:
            self._metrics.clear()

    def __len__(self) -> int:
        return len(self._metrics)
