"""In-process metrics for one orchestrator instance.

Counters, gauges and timing histograms kept in memory and dumped to a
JSON-friendly dict by ``snapshot()``. One collector is created per
orchestrator and handed to the components that report into it.
"""

from __future__ import annotations

import math
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Iterator

_MAX_SAMPLES = 1_000  # per histogram


def _percentile(sorted_data: list[float], pct: float) -> float:
    """Linear-interpolated percentile of pre-sorted data."""
    if not sorted_data:
        return 0.0
    k = (len(sorted_data) - 1) * (pct / 100.0)
    lo = math.floor(k)
    hi = math.ceil(k)
    if lo == hi:
        return sorted_data[int(k)]
    return sorted_data[lo] * (hi - k) + sorted_data[hi] * (k - lo)


class MetricsCollector:
    """Counters, gauges and timings for the agent."""

    def __init__(self) -> None:
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = {}
        self._timings: dict[str, list[float]] = defaultdict(list)

    def incr(self, name: str, value: float = 1.0) -> None:
        self._counters[name] += value

    def gauge(self, name: str, value: float) -> None:
        self._gauges[name] = value

    def observe(self, name: str, value: float) -> None:
        samples = self._timings[name]
        samples.append(value)
        if len(samples) > _MAX_SAMPLES:
            del samples[: len(samples) - _MAX_SAMPLES]

    @contextmanager
    def timed(self, name: str) -> Iterator[None]:
        """Record wall-clock duration of the enclosed block in seconds."""
        started = time.monotonic()
        try:
            yield
        finally:
            self.observe(name, time.monotonic() - started)

    def counter(self, name: str) -> float:
        return self._counters.get(name, 0.0)

    def snapshot(self) -> dict[str, Any]:
        timings: dict[str, dict[str, float]] = {}
        for name, samples in self._timings.items():
            s = sorted(samples)
            timings[name] = {
                "count": len(s),
                "avg": sum(s) / len(s) if s else 0.0,
                "p50": _percentile(s, 50),
                "p95": _percentile(s, 95),
                "max": s[-1] if s else 0.0,
            }
        return {
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "timings": timings,
        }

    def reset(self) -> None:
        self._counters.clear()
        self._gauges.clear()
        self._timings.clear()
