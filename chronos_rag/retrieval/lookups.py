"""
Signal Lookups
---------------
Read-only collaborators consulted by the ranking engine and the search
orchestrator:

  SourceCatalog     -- creation timestamps for recency
  UsageStore        -- daily usage aggregates for popularity
  InteractionStore  -- per-student interaction timestamps for affinity
  ScopeResolver     -- collection / owner -> list of source ids

LocalCatalog implements the catalog, usage and scope protocols over a
single JSON file so the pipeline can run without a database:

    {
      "sources":     [{"source_id": ..., "title": ..., "created_at": ...}],
      "collections": {"<collection_id>": ["<source_id>", ...]},
      "usage":       [{"source_id": ..., "day": "2026-10-01", "views": 12}]
    }
"""
from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence

from loguru import logger

from chronos_rag.schemas import SourceInfo, UsageRecord
from chronos_rag.utils.helpers import load_json, save_json

CATALOG_PATH = Path("data/catalog.json")


# --- Protocols ----------------------------------------------------------------

class SourceCatalog(Protocol):
    def created_at(self, source_ids: Sequence[str]) -> dict[str, Optional[datetime]]: ...


class UsageStore(Protocol):
    def usage_since(self, source_id: str, since: date) -> list[UsageRecord]: ...


class InteractionStore(Protocol):
    def recent_interactions(
        self, subject_id: str, source_id: str, limit: int = 10
    ) -> list[datetime]: ...


class ScopeResolver(Protocol):
    def collection_sources(self, collection_id: str) -> list[str]: ...

    def owner_sources(self, owner_id: str) -> list[str]: ...


# --- JSON-backed implementation -----------------------------------------------

class LocalCatalog:
    """Source metadata, usage rows and collection membership held in memory."""

    def __init__(
        self,
        sources: Iterable[SourceInfo] = (),
        collections: dict[str, list[str]] | None = None,
        usage: Iterable[UsageRecord] = (),
    ) -> None:
        self.sources: dict[str, SourceInfo] = {s.source_id: s for s in sources}
        self.collections: dict[str, list[str]] = dict(collections or {})
        self._usage: dict[str, list[UsageRecord]] = defaultdict(list)
        for record in usage:
            self.add_usage(record)

    def add_source(self, source: SourceInfo) -> None:
        self.sources[source.source_id] = source

    def add_usage(self, record: UsageRecord) -> None:
        self._usage[record.source_id].append(record)

    def get_source(self, source_id: str) -> Optional[SourceInfo]:
        return self.sources.get(source_id)

    # SourceCatalog
    def created_at(self, source_ids: Sequence[str]) -> dict[str, Optional[datetime]]:
        return {
            sid: (self.sources[sid].created_at if sid in self.sources else None)
            for sid in source_ids
        }

    # UsageStore
    def usage_since(self, source_id: str, since: date) -> list[UsageRecord]:
        return [r for r in self._usage.get(source_id, []) if r.day >= since]

    # ScopeResolver
    def collection_sources(self, collection_id: str) -> list[str]:
        return list(self.collections.get(collection_id, []))

    def owner_sources(self, owner_id: str) -> list[str]:
        """Published sources of an owner; drafts and deleted sources are excluded."""
        return [
            s.source_id
            for s in self.sources.values()
            if s.owner_id == owner_id and s.is_published
        ]

    # --- Persistence ----------------------------------------------------------

    def save(self, path: Path = CATALOG_PATH) -> None:
        save_json(
            {
                "sources": [s.model_dump(mode="json") for s in self.sources.values()],
                "collections": self.collections,
                "usage": [
                    r.model_dump(mode="json")
                    for records in self._usage.values()
                    for r in records
                ],
            },
            path,
        )
        logger.info(f"[Catalog] Saved {len(self.sources)} sources -> {path}")

    @classmethod
    def load(cls, path: Path = CATALOG_PATH) -> "LocalCatalog":
        """Load a catalog file; a missing file yields an empty catalog."""
        path = Path(path)
        if not path.exists():
            logger.warning(f"[Catalog] {path} not found -- starting with an empty catalog")
            return cls()

        raw = load_json(path)
        catalog = cls(
            sources=[SourceInfo(**s) for s in raw.get("sources", [])],
            collections=raw.get("collections", {}),
            usage=[UsageRecord(**u) for u in raw.get("usage", [])],
        )
        logger.info(
            f"[Catalog] Loaded {len(catalog.sources)} sources, "
            f"{len(catalog.collections)} collections from {path}"
        )
        return catalog
