"""
Metrics collection and Prometheus-compatible exposition.

Counters are keyed by name plus an optional table label so per-table event
and failure rates can be told apart:

    notify_events_received_total{table="scores"} 12
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any

PREFIX = "notify_"

_Key = tuple[str, str | None]


def _render(name: str, table: str | None) -> str:
    if table is None:
        return name
    return f'{name}{{table="{table}"}}'


class MetricsCollector:
    """
    Pipeline counters and gauges with Prometheus text format export.
    """

    def __init__(self) -> None:
        self._counters: dict[_Key, int] = defaultdict(int)
        self._gauges: dict[_Key, float] = {}
        self._start_time = time.time()

    def inc(self, name: str, value: int = 1, table: str | None = None) -> None:
        """Increment a counter, optionally labelled by table."""
        self._counters[(f"{PREFIX}{name}", table)] += value

    def set_gauge(self, name: str, value: float, table: str | None = None) -> None:
        self._gauges[(f"{PREFIX}{name}", table)] = value

    def get(self, name: str, table: str | None = None) -> int | float:
        """
        Get a metric value.

        Without a table, counters are summed over all labels.
        """
        full = f"{PREFIX}{name}"
        if (full, table) in self._gauges:
            return self._gauges[(full, table)]
        if table is not None:
            return self._counters.get((full, table), 0)
        return sum(v for (n, _), v in self._counters.items() if n == full)

    def to_prometheus(self) -> str:
        """Export all metrics in Prometheus text format."""
        lines = []
        for kind, series in (("counter", self._counters), ("gauge", self._gauges)):
            seen: set[str] = set()
            for (name, table), value in sorted(series.items(), key=lambda kv: (kv[0][0], kv[0][1] or "")):
                if name not in seen:
                    lines.append(f"# TYPE {name} {kind}")
                    seen.add(name)
                lines.append(f"{_render(name, table)} {value}")
        uptime = time.time() - self._start_time
        lines.append(f"# TYPE {PREFIX}uptime_seconds gauge")
        lines.append(f"{PREFIX}uptime_seconds {uptime:.1f}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        return {
            "counters": {_render(n, t): v for (n, t), v in self._counters.items()},
            "gauges": {_render(n, t): v for (n, t), v in self._gauges.items()},
            "uptime_seconds": time.time() - self._start_time,
        }
