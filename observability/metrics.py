"""In-process counters and gauges for the job pipeline."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class _BaseMetric:
    name: str
    _value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def snapshot(self) -> float:
        with self._lock:
            return float(self._value)

    def reset(self) -> None:
        with self._lock:
            self._value = 0.0


class Counter(_BaseMetric):
    """Monotonically increasing counter."""

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError(f"Counter {self.name} cannot decrease")
        with self._lock:
            self._value += amount


class Gauge(_BaseMetric):
    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)


class MetricsRegistry:
    """Thread-safe registry storing metrics by name."""

    def __init__(self) -> None:
        self._metrics: Dict[str, _BaseMetric] = {}
        self._lock = threading.Lock()

    def counter(self, name: str) -> Counter:
        return self._get_or_create(name, Counter)

    def gauge(self, name: str) -> Gauge:
        return self._get_or_create(name, Gauge)

    def _get_or_create(self, name: str, kind: type) -> _BaseMetric:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = kind(name=name)
                self._metrics[name] = metric
            elif not isinstance(metric, kind):
                raise TypeError(f"Metric {name} is already registered as {type(metric).__name__}")
            return metric

    def get(self, name: str) -> Optional[_BaseMetric]:
        with self._lock:
            return self._metrics.get(name)

    def snapshot(self, prefix: str = "") -> Dict[str, float]:
        with self._lock:
            metrics = list(self._metrics.values())
        return {metric.name: metric.snapshot() for metric in metrics if metric.name.startswith(prefix)}

    def reset(self) -> None:
        with self._lock:
            metrics = list(self._metrics.values())
        for metric in metrics:
            metric.reset()


_DEFAULT_REGISTRY = MetricsRegistry()


def get_registry() -> MetricsRegistry:
    return _DEFAULT_REGISTRY


__all__ = [
    "Counter",
    "Gauge",
    "MetricsRegistry",
    "get_registry",
]
