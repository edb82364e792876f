"""In-process counters, gauges and timers exposed via the health endpoint."""
from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Union


@dataclass
class Counter:
    """Monotonically increasing counter."""

    name: str
    _value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def inc(self, amount: float = 1.0) -> None:
        if amount <= 0:
            return
        with self._lock:
            self._value += amount

    def snapshot(self) -> float:
        with self._lock:
            return float(self._value)


@dataclass
class Gauge:
    """Point-in-time value, e.g. the number of queued jobs."""

    name: str
    _value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def add(self, amount: float) -> None:
        with self._lock:
            self._value += amount

    def snapshot(self) -> float:
        with self._lock:
            return float(self._value)


@dataclass
class Timer:
    """Call count plus total and last duration in milliseconds."""

    name: str
    _count: int = 0
    _total_ms: float = 0.0
    _last_ms: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def observe(self, duration_ms: float) -> None:
        with self._lock:
            self._count += 1
            self._total_ms += duration_ms
            self._last_ms = duration_ms

    @contextmanager
    def time(self) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe((time.perf_counter() - started) * 1000.0)

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            avg = self._total_ms / self._count if self._count else 0.0
            return {"count": self._count, "avg_ms": round(avg, 2), "last_ms": round(self._last_ms, 2)}


Metric = Union[Counter, Gauge, Timer]


class MetricsRegistry:
    """Thread-safe registry storing metrics by name."""

    def __init__(self) -> None:
        self._metrics: Dict[str, Metric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, name: str, kind: type) -> Metric:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is not None:
                if not isinstance(metric, kind):
                    raise TypeError(f"metric {name!r} is already registered as {type(metric).__name__}")
                return metric
            metric = kind(name=name)
            self._metrics[name] = metric
            return metric

    def counter(self, name: str) -> Counter:
        return self._get_or_create(name, Counter)  # type: ignore[return-value]

    def gauge(self, name: str) -> Gauge:
        return self._get_or_create(name, Gauge)  # type: ignore[return-value]

    def timer(self, name: str) -> Timer:
        return self._get_or_create(name, Timer)  # type: ignore[return-value]

    def get(self, name: str) -> Optional[Metric]:
        with self._lock:
            return self._metrics.get(name)

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            metrics = list(self._metrics.items())
        return {name: metric.snapshot() for name, metric in sorted(metrics)}


_DEFAULT_REGISTRY = MetricsRegistry()


def get_registry() -> MetricsRegistry:
    return _DEFAULT_REGISTRY


__all__ = [
    "Counter",
    "Gauge",
    "Timer",
    "MetricsRegistry",
    "get_registry",
]
