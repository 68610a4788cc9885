"""
Search Orchestrator
--------------------
Entry point for semantic search over video transcripts:

  validate -> cache lookup -> embed -> vector search (over-fetch)
           -> rank -> (diversity cap) -> truncate -> cache write

Over-fetching min(3 * match_count, 20) candidates gives the ranking
engine room to promote recent / popular / familiar sources above chunks
that were only marginally more similar.

Scoped variants resolve a collection or owner to a source allow-list and
delegate to the same path.  An empty scope short-circuits to [] without
embedding anything.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Callable, Optional, Sequence

from langsmith import traceable
from loguru import logger

from chronos_rag.errors import InvalidQuery
from chronos_rag.retrieval.cache import DEFAULT_TTL_SECONDS, SearchCache, build_cache_key
from chronos_rag.retrieval.lookups import ScopeResolver
from chronos_rag.retrieval.observer import NullObserver, SearchObserver
from chronos_rag.retrieval.ranking import RankingEngine, RankingOptions, ensure_source_diversity
from chronos_rag.retrieval.vector_store import SearchConstraints, VectorStore
from chronos_rag.schemas import RankedResult

MAX_CANDIDATES = 20
OVERFETCH_FACTOR = 3


@dataclass
class SearchOptions:
    match_count: int = 5
    similarity_threshold: float = 0.7
    source_ids: Optional[list[str]] = None        # None = all sources

    boost_recent: bool = True
    boost_popular: bool = True
    affinity_subject_id: Optional[str] = None

    enable_cache: bool = True
    cache_ttl_seconds: int = DEFAULT_TTL_SECONDS

    deduplicate: bool = True
    deduplicate_similarity_threshold: float = 0.95
    max_per_source: Optional[int] = None          # Diversity cap applied after ranking

    similarity_weight: float = 0.60
    recency_weight: float = 0.15
    popularity_weight: float = 0.15
    affinity_weight: float = 0.10

    def to_ranking_options(self) -> RankingOptions:
        return RankingOptions(
            enable_recency_boost=self.boost_recent,
            enable_popularity_boost=self.boost_popular,
            affinity_subject_id=self.affinity_subject_id,
            similarity_weight=self.similarity_weight,
            recency_weight=self.recency_weight,
            popularity_weight=self.popularity_weight,
            affinity_weight=self.affinity_weight,
            deduplicate=self.deduplicate,
            deduplicate_similarity_threshold=self.deduplicate_similarity_threshold,
        )

    def with_sources(self, source_ids: list[str]) -> "SearchOptions":
        return replace(self, source_ids=source_ids)


def candidate_count(match_count: int) -> int:
    return min(OVERFETCH_FACTOR * match_count, MAX_CANDIDATES)


class SearchOrchestrator:
    """
    Combines embedding, vector search, ranking and caching.

    Args:
        embed:          Callable mapping query text to an embedding vector.
        vector_store:   Any VectorStore (FaissChunkStore in production).
        ranking_engine: RankingEngine with its signal lookups wired in.
        cache:          Optional SearchCache; None disables caching.
        scopes:         Optional ScopeResolver for the scoped variants.
        observer:       Optional SearchObserver (e.g. CacheMetrics).
    """

    def __init__(
        self,
        embed: Callable[[str], Sequence[float]],
        vector_store: VectorStore,
        ranking_engine: RankingEngine,
        cache: SearchCache | None = None,
        scopes: ScopeResolver | None = None,
        observer: SearchObserver | None = None,
    ) -> None:
        self.embed = embed
        self.vector_store = vector_store
        self.ranking_engine = ranking_engine
        self.cache = cache
        self.scopes = scopes
        self.observer = observer or NullObserver()

    @traceable(name="enhanced_search", run_type="retriever")
    def enhanced_search(
        self,
        query: str,
        options: SearchOptions | None = None,
    ) -> list[RankedResult]:
        """
        Return at most match_count ranked results for the query.

        Raises:
            InvalidQuery:     blank query, non-positive count, bad threshold.
            StoreUnavailable: the vector store could not be queried.
        """
        options = options or SearchOptions()
        _validate(query, options)

        start = time.perf_counter()
        use_cache = options.enable_cache and self.cache is not None
        cache_key = _cache_key(query, options)

        if use_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                self.observer.on_cache_hit(cache_key)
                logger.debug(f"[Search] Cache hit | {len(cached)} results | query={query[:60]!r}")
                return cached
            self.observer.on_cache_miss(cache_key)

        logger.debug(f"[Search] Query: {query[:80]!r}")
        query_vec = self.embed(query)

        candidates = self.vector_store.search(
            query_vec,
            SearchConstraints(
                limit=candidate_count(options.match_count),
                similarity_threshold=options.similarity_threshold,
                source_ids=options.source_ids,
            ),
        )
        if not candidates:
            logger.info(f"[Search] No candidates above {options.similarity_threshold}")
            return []

        results = self.ranking_engine.rank(candidates, options.to_ranking_options())
        if options.max_per_source is not None:
            results = ensure_source_diversity(results, options.max_per_source)
        # Vectors are only needed for ranking; callers see the cached shape
        results = [
            r.model_copy(update={"embedding": None})
            for r in results[: options.match_count]
        ]

        if use_cache:
            self.cache.set(
                cache_key,
                query=query,
                source_ids=options.source_ids,
                results=results,
                ttl_seconds=options.cache_ttl_seconds,
            )

        elapsed_ms = (time.perf_counter() - start) * 1000
        self.observer.on_search_completed(len(results), elapsed_ms)
        logger.info(
            f"[Search] {len(results)} results from {len(candidates)} candidates "
            f"in {elapsed_ms:.0f}ms"
            + (f" (top rank: {results[0].rank_score:.4f})" if results else "")
        )
        return results

    # --- Scoped variants ------------------------------------------------------

    def search_within_collection(
        self,
        collection_id: str,
        query: str,
        options: SearchOptions | None = None,
    ) -> list[RankedResult]:
        """Search only the sources grouped under a collection (course)."""
        source_ids = self._require_scopes().collection_sources(collection_id)
        if not source_ids:
            logger.info(f"[Search] Collection {collection_id} has no sources")
            return []
        return self.enhanced_search(query, (options or SearchOptions()).with_sources(source_ids))

    def search_owner_content(
        self,
        owner_id: str,
        query: str,
        options: SearchOptions | None = None,
    ) -> list[RankedResult]:
        """Search only an owner's published, non-deleted sources."""
        source_ids = self._require_scopes().owner_sources(owner_id)
        if not source_ids:
            logger.info(f"[Search] Owner {owner_id} has no published sources")
            return []
        return self.enhanced_search(query, (options or SearchOptions()).with_sources(source_ids))

    def _require_scopes(self) -> ScopeResolver:
        if self.scopes is None:
            raise RuntimeError("SearchOrchestrator was created without a ScopeResolver")
        return self.scopes

    # --- Cache invalidation ---------------------------------------------------

    def invalidate_source(self, source_id: str) -> int:
        """Drop cached searches that filtered on or returned source_id."""
        if self.cache is None:
            return 0
        return self.cache.invalidate_source(source_id)

    def invalidate_all(self) -> int:
        if self.cache is None:
            return 0
        return self.cache.invalidate_all()


def _validate(query: str, options: SearchOptions) -> None:
    if not query or not query.strip():
        raise InvalidQuery("Query must not be blank")
    if options.match_count <= 0:
        raise InvalidQuery(f"match_count must be positive, got {options.match_count}")
    if not 0.0 <= options.similarity_threshold <= 1.0:
        raise InvalidQuery(
            f"similarity_threshold must be within [0, 1], got {options.similarity_threshold}"
        )


def _cache_key(query: str, options: SearchOptions) -> str:
    return build_cache_key(
        query,
        source_ids=options.source_ids,
        subject=options.affinity_subject_id,
        count=options.match_count,
        threshold=options.similarity_threshold,
        recent=options.boost_recent,
        popular=options.boost_popular,
        dedup=options.deduplicate,
        dedup_threshold=options.deduplicate_similarity_threshold,
        max_per_source=options.max_per_source,
        weights=(
            options.similarity_weight,
            options.recency_weight,
            options.popularity_weight,
            options.affinity_weight,
        ),
    )
