"""
Resource sampling and admission checks for the queue processor.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

import psutil

METRICS = ("cpu", "memory", "io")
HISTORY_SIZE = 60
ADAPTIVE_FLOOR = 50.0
ADAPTIVE_CEILING = 90.0
ADAPTIVE_HEADROOM = 1.5


@dataclass(frozen=True)
class Availability:
    """Admission decision plus the readings it was based on."""

    available: bool
    reasons: list[str]
    metrics: Dict[str, float]


def adaptive_limit(average: float) -> float:
    return min(ADAPTIVE_CEILING, max(ADAPTIVE_FLOOR, average * ADAPTIVE_HEADROOM))


@dataclass
class ResourceMonitor:
    """Sample CPU, memory, and disk I/O and decide whether new work may start."""

    max_cpu_percent: float = 80.0
    max_memory_percent: float = 80.0
    max_io_percent: float = 80.0
    io_reference_mbps: float = 100.0
    sample_intervals: Dict[str, float] = field(
        default_factory=lambda: {"cpu": 5.0, "memory": 10.0, "io": 5.0}
    )
    adaptive: bool = True
    adaptive_interval_seconds: float = 300.0
    history_size: int = HISTORY_SIZE
    clock: Callable[[], float] = time.monotonic
    logger: Optional[logging.Logger] = None
    _history: Dict[str, deque] = field(default_factory=dict, init=False, repr=False)
    _last_value: Dict[str, float] = field(default_factory=dict, init=False, repr=False)
    _last_sampled: Dict[str, float] = field(default_factory=dict, init=False, repr=False)
    _last_io: Optional[tuple[float, int]] = field(default=None, init=False, repr=False)
    _last_adapted: float = field(default=0.0, init=False, repr=False)

    def __post_init__(self) -> None:
        self._history = {metric: deque(maxlen=self.history_size) for metric in METRICS}
        self.limits: Dict[str, float] = {
            "cpu": float(self.max_cpu_percent),
            "memory": float(self.max_memory_percent),
            "io": float(self.max_io_percent),
        }
        if self.logger is None:
            self.logger = logging.getLogger("par2protect")
        self._last_adapted = self.clock()

    def check_availability(self) -> Availability:
        """Return whether every metric is within its current limit."""
        if self.adaptive and (self.clock() - self._last_adapted) >= self.adaptive_interval_seconds:
            self.calculate_adaptive_limits()
        metrics = {
            "cpu": self.cpu_usage(),
            "memory": self.memory_usage(),
            "io": self.io_usage(),
        }
        labels = {"cpu": "CPU", "memory": "Memory", "io": "I/O"}
        reasons = [
            f"{labels[metric]} usage {value:.1f}% exceeds limit {self.limits[metric]:.1f}%"
            for metric, value in metrics.items()
            if value > self.limits[metric]
        ]
        if reasons:
            self.logger.info("Resources unavailable: %s", "; ".join(reasons))
        return Availability(available=not reasons, reasons=reasons, metrics=metrics)

    def cpu_usage(self) -> float:
        return self._sample("cpu", self._read_cpu)

    def memory_usage(self) -> float:
        return self._sample("memory", self._read_memory)

    def io_usage(self) -> float:
        return self._sample("io", self._read_io)

    def record_sample(self, metric: str, value: float) -> None:
        """Append a reading to the metric's ring history."""
        self._history[metric].append(float(value))
        self._last_value[metric] = float(value)
        self._last_sampled[metric] = self.clock()

    def history(self) -> Dict[str, list[float]]:
        """Return snapshot copies of every metric's history."""
        return {metric: list(values) for metric, values in self._history.items()}

    def calculate_adaptive_limits(self) -> Dict[str, float]:
        """Recompute each limit from its history average; empty histories keep their limit."""
        for metric in METRICS:
            values = list(self._history[metric])
            if not values:
                continue
            average = sum(values) / len(values)
            self.limits[metric] = adaptive_limit(average)
        self._last_adapted = self.clock()
        self.logger.debug(
            "Adaptive limits: cpu=%.1f memory=%.1f io=%.1f",
            self.limits["cpu"],
            self.limits["memory"],
            self.limits["io"],
        )
        return dict(self.limits)

    def _sample(self, metric: str, reader: Callable[[], float]) -> float:
        now = self.clock()
        last = self._last_sampled.get(metric)
        if last is not None and (now - last) < self.sample_intervals.get(metric, 0.0):
            return self._last_value[metric]
        value = reader()
        self.record_sample(metric, value)
        return value

    def _read_cpu(self) -> float:
        load_1m = psutil.getloadavg()[0]
        cores = psutil.cpu_count() or 1
        return round(load_1m / cores * 100.0, 2)

    def _read_memory(self) -> float:
        memory = psutil.virtual_memory()
        if not memory.total:
            return 0.0
        cached = getattr(memory, "cached", 0)
        buffers = getattr(memory, "buffers", 0)
        used = memory.total - memory.free - cached - buffers
        return round(max(used, 0) / memory.total * 100.0, 2)

    def _read_io(self) -> float:
        counters = psutil.disk_io_counters()
        if counters is None:
            return 0.0
        now = self.clock()
        total_bytes = counters.read_bytes + counters.write_bytes
        previous = self._last_io
        self._last_io = (now, total_bytes)
        if previous is None:
            return 0.0
        elapsed = now - previous[0]
        if elapsed <= 0 or self.io_reference_mbps <= 0:
            return 0.0
        rate_mbps = (total_bytes - previous[1]) / elapsed / (1024 * 1024)
        return round(min(max(rate_mbps / self.io_reference_mbps * 100.0, 0.0), 100.0), 2)
