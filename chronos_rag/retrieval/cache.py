"""
Search Result Cache
--------------------
Short-lived cache of ranked search results keyed by every option that
affects the output.

Key   : rag:search:<sha256 of normalised query + options>
Value : orjson envelope {"query", "source_ids", "results"}

Entries are written wholesale and expire by TTL.  Invalidation scans the
search namespace and inspects each envelope, so an unfiltered search that
happened to return a source is dropped together with the entries that
were explicitly filtered on it.

Backends implement the CacheStore protocol:
  InMemoryCacheStore -- process-local dict with monotonic expiry
  RedisCacheStore    -- redis-py, for deployments with several workers
"""
from __future__ import annotations

import fnmatch
import hashlib
import threading
import time
from typing import Iterable, Optional, Protocol, Sequence

import orjson
from loguru import logger

from chronos_rag.schemas import RankedResult
from chronos_rag.utils.helpers import normalise_text

KEY_PREFIX = "rag:search:"
DEFAULT_TTL_SECONDS = 300


class CacheStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None: ...

    def scan_keys(self, pattern: str) -> list[str]: ...

    def delete(self, keys: Sequence[str]) -> int: ...


# --- Backends -----------------------------------------------------------------

class InMemoryCacheStore:
    """Thread-safe dict cache; expired entries are swept on every write and scan."""

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[float, bytes]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._data[key]
                return None
            return value

    def _sweep(self, now: float) -> None:
        # Caller holds the lock
        expired = [k for k, (expires_at, _) in self._data.items() if expires_at <= now]
        for k in expired:
            del self._data[k]

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            self._data[key] = (now + ttl_seconds, value)

    def scan_keys(self, pattern: str) -> list[str]:
        with self._lock:
            self._sweep(self._clock())
            return [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]

    def delete(self, keys: Sequence[str]) -> int:
        with self._lock:
            removed = 0
            for k in keys:
                if self._data.pop(k, None) is not None:
                    removed += 1
            return removed

    def __len__(self) -> int:
        return len(self.scan_keys("*"))


class RedisCacheStore:
    """CacheStore over a Redis server (SET EX / SCAN / DEL)."""

    def __init__(self, url: str = "redis://localhost:6379/0", client=None) -> None:
        if client is None:
            import redis  # lazy import: only needed when Redis is configured
            client = redis.Redis.from_url(url)
        self._client = client

    def get(self, key: str) -> Optional[bytes]:
        return self._client.get(key)

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        self._client.set(key, value, ex=ttl_seconds)

    def scan_keys(self, pattern: str) -> list[str]:
        return [
            k.decode() if isinstance(k, bytes) else k
            for k in self._client.scan_iter(match=pattern, count=500)
        ]

    def delete(self, keys: Sequence[str]) -> int:
        if not keys:
            return 0
        return int(self._client.delete(*keys))


# --- Search cache -------------------------------------------------------------

def build_cache_key(query: str, **options) -> str:
    """
    Deterministic key over the normalised query and every option value.
    Source id lists are sorted so filter order never splits the cache.
    """
    parts = [normalise_text(query)]
    for name in sorted(options):
        value = options[name]
        if name == "source_ids":
            value = ",".join(sorted(value)) if value is not None else "all"
        elif value is None:
            value = "none"
        parts.append(f"{name}={value}")
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}{digest}"


class SearchCache:
    """
    Envelope codec and failure boundary around a CacheStore.

    Every backend error is logged and absorbed: reads degrade to a miss,
    writes and invalidations to a no-op.
    """

    def __init__(self, store: CacheStore) -> None:
        self.store = store

    def get(self, key: str) -> Optional[list[RankedResult]]:
        try:
            raw = self.store.get(key)
            if raw is None:
                return None
            envelope = orjson.loads(raw)
            return [RankedResult(**r) for r in envelope["results"]]
        except Exception as exc:
            logger.warning(f"[Cache] Read failed for {key[-12:]}: {exc}")
            return None

    def set(
        self,
        key: str,
        query: str,
        source_ids: Optional[Iterable[str]],
        results: Sequence[RankedResult],
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        envelope = {
            "query": query,
            "source_ids": sorted(source_ids) if source_ids is not None else None,
            "results": [r.model_dump(mode="json") for r in results],
        }
        try:
            self.store.set(key, orjson.dumps(envelope), ttl_seconds)
        except Exception as exc:
            logger.warning(f"[Cache] Write failed for {key[-12:]}: {exc}")

    def invalidate_source(self, source_id: str) -> int:
        """Drop every entry filtered on, or containing results from, source_id."""
        try:
            stale: list[str] = []
            for key in self.store.scan_keys(f"{KEY_PREFIX}*"):
                raw = self.store.get(key)
                if raw is None:
                    continue
                if _mentions_source(orjson.loads(raw), source_id):
                    stale.append(key)
            removed = self.store.delete(stale)
        except Exception as exc:
            logger.warning(f"[Cache] Invalidation failed for source {source_id}: {exc}")
            return 0

        logger.info(f"[Cache] Invalidated {removed} entries for source {source_id}")
        return removed

    def invalidate_all(self) -> int:
        try:
            removed = self.store.delete(self.store.scan_keys(f"{KEY_PREFIX}*"))
        except Exception as exc:
            logger.warning(f"[Cache] Flush failed: {exc}")
            return 0

        logger.info(f"[Cache] Flushed {removed} search entries")
        return removed


def _mentions_source(envelope: dict, source_id: str) -> bool:
    if source_id in (envelope.get("source_ids") or []):
        return True
    return any(r.get("source_id") == source_id for r in envelope.get("results", []))
