"""Hit/miss accounting for cached resources."""

from __future__ import annotations

import threading
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class MetricsSnapshot:
    """Consistent view of the counters taken under a single lock."""

    hits: int
    misses: int

    @property
    def total(self) -> int:
        return self.hits + self.misses

    @property
    def hit_ratio(self) -> float:
        total = self.total
        return 0.0 if total == 0 else self.hits / total


class CacheMetrics:
    """Thread-safe cache hit/miss counters."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @property
    def hits(self) -> int:
        with self._lock:
            return self._hits

    @property
    def misses(self) -> int:
        with self._lock:
            return self._misses

    @property
    def hit_ratio(self) -> float:
        """Return the hit ratio in the range 0.0 to 1.0."""

        return self.snapshot().hit_ratio

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(hits=self._hits, misses=self._misses)

    def record_hit(self) -> None:
        with self._lock:
            self._hits += 1

    def record_miss(self) -> None:
        with self._lock:
            self._misses += 1

    def reset(self) -> None:
        with self._lock:
            self._hits = 0
            self._misses = 0

    def as_dict(self) -> dict[str, float | int]:
        snap = self.snapshot()
        return {"hits": snap.hits, "misses": snap.misses, "hit_ratio": snap.hit_ratio}

    def __str__(self) -> str:
        snap = self.snapshot()
        return f"Hits: {snap.hits}, Misses: {snap.misses}, Hit Ratio: {snap.hit_ratio:.2%}"


__all__ = ["CacheMetrics", "MetricsSnapshot"]
