"""
Fan-out counters with Prometheus-compatible text exposition.

Counters are per process; the API and each worker expose their own.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any


class MetricsCollector:
    def __init__(self, prefix: str = "fizzy") -> None:
        self._prefix = prefix
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = {}
        self._start_time = time.time()

    def _name(self, name: str) -> str:
        return f"{self._prefix}_{name}"

    def inc(self, name: str, value: int = 1) -> None:
        self._counters[self._name(name)] += value

    def set_gauge(self, name: str, value: float) -> None:
        self._gauges[self._name(name)] = value

    def get(self, name: str) -> int | float:
        full = self._name(name)
        if full in self._gauges:
            return self._gauges[full]
        return self._counters.get(full, 0)

    def reset(self) -> None:
        self._counters.clear()
        self._gauges.clear()

    def to_prometheus(self) -> str:
        lines = []
        for name, value in sorted(self._counters.items()):
            lines.append(f"# TYPE {name} counter")
            lines.append(f"{name} {value}")
        for name, value in sorted(self._gauges.items()):
            lines.append(f"# TYPE {name} gauge")
            lines.append(f"{name} {value}")
        uptime = time.time() - self._start_time
        lines.append(f"# TYPE {self._prefix}_uptime_seconds gauge")
        lines.append(f"{self._prefix}_uptime_seconds {uptime:.1f}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        return {
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "uptime_seconds": time.time() - self._start_time,
        }


# Singleton
metrics = MetricsCollector()
