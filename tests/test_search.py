"""
Tests for the search orchestrator: validation, over-fetch, caching,
invalidation, scoped variants and error propagation.
"""
from unittest.mock import MagicMock

import pytest

from chronos_rag.errors import InvalidQuery, StoreUnavailable
from chronos_rag.retrieval.cache import InMemoryCacheStore, SearchCache
from chronos_rag.retrieval.lookups import LocalCatalog
from chronos_rag.retrieval.observer import CacheMetrics
from chronos_rag.retrieval.ranking import RankingEngine
from chronos_rag.retrieval.search import SearchOptions, SearchOrchestrator, candidate_count
from chronos_rag.schemas import SourceInfo


@pytest.fixture
def candidates(make_candidate):
    return [
        make_candidate("a1", "vid-a", 0.93, embedding=[1.0, 0.0, 0.0]),
        make_candidate("b1", "vid-b", 0.88, embedding=[0.0, 1.0, 0.0]),
        make_candidate("c1", "vid-c", 0.81, embedding=[0.0, 0.0, 1.0]),
        make_candidate("d1", "vid-d", 0.72, embedding=[0.5, 0.5, 0.0]),
    ]


@pytest.fixture
def catalog():
    return LocalCatalog(
        sources=[
            SourceInfo(source_id="vid-a", owner_id="creator-1"),
            SourceInfo(source_id="vid-b", owner_id="creator-1"),
            SourceInfo(source_id="vid-c", owner_id="creator-2"),
            SourceInfo(source_id="vid-d", owner_id="creator-1", is_deleted=True),
        ],
        collections={"course-1": ["vid-b", "vid-c"], "course-empty": []},
    )


@pytest.fixture
def build(fake_embed, clock, make_store, candidates, catalog):
    """Build an orchestrator over the fake store; returns (orchestrator, store, metrics)."""

    def _build(store=None, cache_store=None, with_cache=True):
        store = store or make_store(candidates)
        metrics = CacheMetrics()
        cache = SearchCache(cache_store or InMemoryCacheStore()) if with_cache else None
        orchestrator = SearchOrchestrator(
            embed=fake_embed,
            vector_store=store,
            ranking_engine=RankingEngine(clock=clock),
            cache=cache,
            scopes=catalog,
            observer=metrics,
        )
        return orchestrator, store, metrics

    return _build


class TestValidation:
    @pytest.mark.parametrize("query", ["", "   ", "\n\t"])
    def test_blank_query_rejected_before_io(self, build, fake_embed, query):
        orchestrator, store, _ = build()

        with pytest.raises(InvalidQuery):
            orchestrator.enhanced_search(query)

        assert fake_embed.calls == []
        assert store.calls == []

    def test_non_positive_match_count(self, build):
        orchestrator, _, _ = build()

        with pytest.raises(InvalidQuery):
            orchestrator.enhanced_search("closures", SearchOptions(match_count=0))

    def test_threshold_outside_unit_interval(self, build):
        orchestrator, _, _ = build()

        with pytest.raises(InvalidQuery):
            orchestrator.enhanced_search("closures", SearchOptions(similarity_threshold=1.5))

    def test_invalid_query_is_a_value_error(self):
        assert issubclass(InvalidQuery, ValueError)


class TestEnhancedSearch:
    def test_candidate_count_overfetches_up_to_twenty(self):
        assert candidate_count(1) == 3
        assert candidate_count(5) == 15
        assert candidate_count(7) == 20
        assert candidate_count(50) == 20

    def test_store_receives_overfetch_limit_and_filters(self, build):
        orchestrator, store, _ = build()

        orchestrator.enhanced_search(
            "closures",
            SearchOptions(match_count=2, similarity_threshold=0.8, source_ids=["vid-a", "vid-b"]),
        )

        constraints = store.calls[0]
        assert constraints.limit == 6
        assert constraints.similarity_threshold == 0.8
        assert constraints.source_ids == ["vid-a", "vid-b"]

    def test_results_truncated_to_match_count(self, build):
        orchestrator, _, _ = build()

        results = orchestrator.enhanced_search("closures", SearchOptions(match_count=2))

        assert [r.chunk_id for r in results] == ["a1", "b1"]

    def test_nothing_below_threshold_reaches_ranking(self, build, fake_embed, clock, make_store, candidates):
        engine = MagicMock(wraps=RankingEngine(clock=clock))
        orchestrator = SearchOrchestrator(fake_embed, make_store(candidates), engine)

        results = orchestrator.enhanced_search("closures", SearchOptions(similarity_threshold=0.9))

        ranked_input = engine.rank.call_args.args[0]
        assert all(c.similarity >= 0.9 for c in ranked_input)
        assert [r.chunk_id for r in results] == ["a1"]

    def test_no_candidates_returns_empty_and_is_not_cached(self, build, fake_embed, make_store):
        orchestrator, _, metrics = build(store=make_store([]))

        assert orchestrator.enhanced_search("quantum") == []
        assert orchestrator.enhanced_search("quantum") == []

        assert len(fake_embed.calls) == 2
        assert metrics.misses == 2

    def test_results_carry_no_embeddings(self, build):
        orchestrator, _, _ = build()

        results = orchestrator.enhanced_search("closures")

        assert all(r.embedding is None for r in results)

    def test_max_per_source_caps_results(self, build, make_store, make_candidate):
        store = make_store([
            make_candidate("a1", "vid-a", 0.95, embedding=[1.0, 0.0]),
            make_candidate("a2", "vid-a", 0.94, embedding=[0.0, 1.0]),
            make_candidate("b1", "vid-b", 0.80, embedding=[1.0, 0.0]),
        ])
        orchestrator, _, _ = build(store=store)

        results = orchestrator.enhanced_search("closures", SearchOptions(max_per_source=1))

        assert [r.chunk_id for r in results] == ["a1", "b1"]

    def test_store_unavailable_propagates(self, build, unavailable_store):
        orchestrator, _, _ = build(store=unavailable_store)

        with pytest.raises(StoreUnavailable):
            orchestrator.enhanced_search("closures")


class TestCaching:
    def test_second_call_is_served_from_cache(self, build, fake_embed):
        orchestrator, store, metrics = build()

        first = orchestrator.enhanced_search("What is a closure?")
        second = orchestrator.enhanced_search("  what is a   CLOSURE? ")

        assert [r.model_dump() for r in first] == [r.model_dump() for r in second]
        assert len(fake_embed.calls) == 1
        assert len(store.calls) == 1
        assert metrics.hits == 1
        assert metrics.misses == 1
        assert metrics.hit_rate == pytest.approx(0.5)

    def test_different_options_use_different_entries(self, build, fake_embed):
        orchestrator, _, _ = build()

        orchestrator.enhanced_search("closures", SearchOptions(match_count=2))
        orchestrator.enhanced_search("closures", SearchOptions(match_count=3))
        orchestrator.enhanced_search("closures", SearchOptions(match_count=3, boost_recent=False))

        assert len(fake_embed.calls) == 3

    def test_ranking_weights_are_part_of_the_key(self, build, fake_embed):
        orchestrator, _, _ = build()

        orchestrator.enhanced_search("closures")
        orchestrator.enhanced_search("closures", SearchOptions(similarity_weight=1.0, recency_weight=0.0))

        assert len(fake_embed.calls) == 2

    def test_cache_disabled_per_request(self, build, fake_embed):
        orchestrator, _, metrics = build()

        orchestrator.enhanced_search("closures", SearchOptions(enable_cache=False))
        orchestrator.enhanced_search("closures", SearchOptions(enable_cache=False))

        assert len(fake_embed.calls) == 2
        assert metrics.total_searches == 0

    def test_broken_cache_degrades_to_uncached_search(self, build, fake_embed):
        broken = MagicMock()
        broken.get.side_effect = ConnectionError("redis down")
        broken.set.side_effect = ConnectionError("redis down")
        orchestrator, _, _ = build(cache_store=broken)

        first = orchestrator.enhanced_search("closures")
        second = orchestrator.enhanced_search("closures")

        assert len(first) == len(second) == 4
        assert len(fake_embed.calls) == 2

    def test_invalidate_source_leaves_unrelated_entries(self, build, fake_embed):
        orchestrator, _, _ = build()
        orchestrator.enhanced_search("closures", SearchOptions(source_ids=["vid-a"]))
        orchestrator.enhanced_search("decorators", SearchOptions(source_ids=["vid-c"]))
        orchestrator.enhanced_search("generators")       # unfiltered; returns vid-a chunks

        removed = orchestrator.invalidate_source("vid-a")

        assert removed == 2
        fake_embed.calls.clear()
        orchestrator.enhanced_search("decorators", SearchOptions(source_ids=["vid-c"]))
        orchestrator.enhanced_search("closures", SearchOptions(source_ids=["vid-a"]))
        assert fake_embed.calls == ["closures"]

    def test_invalidate_all(self, build):
        orchestrator, _, _ = build()
        orchestrator.enhanced_search("closures")
        orchestrator.enhanced_search("decorators")

        assert orchestrator.invalidate_all() == 2
        assert orchestrator.invalidate_all() == 0

    def test_invalidation_without_cache_is_noop(self, build):
        orchestrator, _, _ = build(with_cache=False)

        assert orchestrator.invalidate_source("vid-a") == 0
        assert orchestrator.invalidate_all() == 0

    def test_invalidation_failure_returns_zero(self, build):
        broken = MagicMock()
        broken.scan_keys.side_effect = ConnectionError("redis down")
        orchestrator, _, _ = build(cache_store=broken)

        assert orchestrator.invalidate_source("vid-a") == 0
        assert orchestrator.invalidate_all() == 0


class TestScopedSearch:
    def test_collection_restricts_sources(self, build):
        orchestrator, store, _ = build()

        results = orchestrator.search_within_collection("course-1", "closures")

        assert store.calls[0].source_ids == ["vid-b", "vid-c"]
        assert {r.source_id for r in results} == {"vid-b", "vid-c"}

    def test_empty_collection_short_circuits(self, build, fake_embed):
        orchestrator, store, _ = build()

        assert orchestrator.search_within_collection("course-empty", "closures") == []
        assert orchestrator.search_within_collection("unknown", "closures") == []
        assert fake_embed.calls == []
        assert store.calls == []

    def test_owner_content_skips_deleted_sources(self, build):
        orchestrator, store, _ = build()

        results = orchestrator.search_owner_content("creator-1", "closures")

        assert sorted(store.calls[0].source_ids) == ["vid-a", "vid-b"]
        assert {r.source_id for r in results} == {"vid-a", "vid-b"}

    def test_owner_without_sources(self, build, fake_embed):
        orchestrator, _, _ = build()

        assert orchestrator.search_owner_content("nobody", "closures") == []
        assert fake_embed.calls == []

    def test_scoped_search_keeps_caller_options(self, build):
        orchestrator, store, _ = build()

        orchestrator.search_within_collection(
            "course-1", "closures", SearchOptions(match_count=1, similarity_threshold=0.85)
        )

        assert store.calls[0].limit == 3
        assert store.calls[0].similarity_threshold == 0.85
