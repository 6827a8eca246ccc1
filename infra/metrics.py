from __future__ import annotations

import time
from collections import defaultdict, deque
from contextlib import contextmanager
from typing import Any, Deque, Dict, Iterator, List, Optional


class Metrics:
    """In-process counters and latency samples for the ingest path."""

    def __init__(self, max_samples: int = 2000) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        self._reason_counters: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._max_samples = max(1, int(max_samples))
        self._histograms: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=self._max_samples))

    def reset(self) -> None:
        self._counters.clear()
        self._reason_counters.clear()
        self._histograms.clear()

    def inc(self, name: str, n: int = 1) -> None:
        if not name:
            return
        self._counters[str(name)] += int(n)

    def inc_reason(self, group: str, reason: str, n: int = 1) -> None:
        if not group or not reason:
            return
        self._reason_counters[str(group)][str(reason)] += int(n)

    def counter(self, name: str) -> int:
        return int(self._counters.get(str(name), 0))

    def observe(self, name: str, value: float) -> None:
        if not name:
            return
        v = float(value)
        if v != v:  # NaN
            return
        self._histograms[str(name)].append(v)

    @contextmanager
    def timer_ms(self, name: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, (time.perf_counter() - start) * 1000.0)

    @staticmethod
    def _percentile(vals: List[float], pct: float) -> Optional[float]:
        if not vals:
            return None
        v = sorted(vals)
        if len(v) == 1:
            return float(v[0])
        k = max(0, min(len(v) - 1, int(round((pct / 100.0) * (len(v) - 1)))))
        return float(v[k])

    def snapshot(self) -> Dict[str, Any]:
        hist_stats: Dict[str, Any] = {}
        for name, samples in self._histograms.items():
            vals = list(samples)
            hist_stats[name] = {
                "count": len(vals),
                "p50": self._percentile(vals, 50.0),
                "p95": self._percentile(vals, 95.0),
                "p99": self._percentile(vals, 99.0),
                "max": max(vals) if vals else None,
            }

        return {
            "counters": dict(self._counters),
            "reason_counters": {group: dict(counts) for group, counts in self._reason_counters.items()},
            "histograms": hist_stats,
        }


METRICS = Metrics()
