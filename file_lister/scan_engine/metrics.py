"""Process-local counters and timing aggregates for the scan engine.

The scanner and the thumbnail pipeline record here; tests read the values to
check behaviour such as single-flight generation. Timings are kept as
running aggregates (count, total, max) so a long session does not grow them.

Usage:
    from file_lister.scan_engine.metrics import metrics
    metrics.inc("thumbnail.generate_attempts")
    with metrics.timed("scan.duration"):
        ...
    metrics.get("thumbnail.generate_attempts")
"""

from __future__ import annotations

import time
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from typing import Any


@dataclass
class _Timing:
    count: int = 0
    total: float = 0.0
    max: float = 0.0

    def add(self, seconds: float) -> None:
        self.count += 1
        self.total += seconds
        self.max = max(self.max, seconds)

    def as_dict(self) -> dict[str, float]:
        mean = self.total / self.count if self.count else 0.0
        return {"count": self.count, "total": self.total, "max": self.max, "mean": mean}


class EngineMetrics:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Counter[str] = Counter()
        self._timings: dict[str, _Timing] = {}

    def inc(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[key] += int(amount)

    def get(self, key: str) -> int:
        with self._lock:
            return self._counters[key]

    def observe(self, key: str, seconds: float) -> None:
        with self._lock:
            self._timings.setdefault(key, _Timing()).add(seconds)

    @contextmanager
    def timed(self, key: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(key, time.perf_counter() - start)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "timings": {k: t.as_dict() for k, t in self._timings.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._timings.clear()


metrics = EngineMetrics()
