"""Hooks the search orchestrator calls for cache and latency bookkeeping."""
from __future__ import annotations

import threading
from typing import Protocol


class SearchObserver(Protocol):
    def on_cache_hit(self, cache_key: str) -> None: ...

    def on_cache_miss(self, cache_key: str) -> None: ...

    def on_search_completed(self, result_count: int, elapsed_ms: float) -> None: ...


class NullObserver:
    def on_cache_hit(self, cache_key: str) -> None:
        pass

    def on_cache_miss(self, cache_key: str) -> None:
        pass

    def on_search_completed(self, result_count: int, elapsed_ms: float) -> None:
        pass


class CacheMetrics:
    """Running hit / miss counters, shareable across request threads."""

    def __init__(self) -> None:
        self.hits = 0
        self.misses = 0
        self.completed = 0
        self.total_elapsed_ms = 0.0
        self._lock = threading.Lock()

    def on_cache_hit(self, cache_key: str) -> None:
        with self._lock:
            self.hits += 1

    def on_cache_miss(self, cache_key: str) -> None:
        with self._lock:
            self.misses += 1

    def on_search_completed(self, result_count: int, elapsed_ms: float) -> None:
        with self._lock:
            self.completed += 1
            self.total_elapsed_ms += elapsed_ms

    @property
    def total_searches(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        total = self.total_searches
        return self.hits / total if total else 0.0

    def snapshot(self) -> dict:
        with self._lock:
            completed = self.completed
            avg_ms = self.total_elapsed_ms / completed if completed else 0.0
        return {
            "total_searches": self.total_searches,
            "cache_hits": self.hits,
            "cache_misses": self.misses,
            "hit_rate": round(self.hit_rate, 4),
            "avg_search_ms": round(avg_ms, 1),
        }
