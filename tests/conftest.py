"""
Shared test fixtures.

Provides: fixed clock, candidate/result factories, fake embedder, fake
vector store, fake generator.  No test touches OpenAI, Anthropic or Redis.
"""
from datetime import datetime, timezone
from typing import Optional

import pytest

from chronos_rag.errors import StoreUnavailable
from chronos_rag.generation.generator import GenerationResult
from chronos_rag.schemas import RankBreakdown, RankedResult, SearchCandidate

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


class FakeEmbed:
    """Callable embedder that records every query it sees."""

    def __init__(self, vector=(1.0, 0.0, 0.0, 0.0)):
        self.vector = list(vector)
        self.calls: list[str] = []

    def __call__(self, text: str):
        self.calls.append(text)
        return self.vector


class FakeVectorStore:
    """Returns canned candidates, honouring threshold, allow-list and limit."""

    def __init__(self, candidates: Optional[list[SearchCandidate]] = None, error: Exception | None = None):
        self.candidates = candidates or []
        self.error = error
        self.calls = []

    def search(self, query_embedding, constraints):
        self.calls.append(constraints)
        if self.error is not None:
            raise self.error
        hits = [
            c for c in self.candidates
            if c.similarity >= constraints.similarity_threshold
            and (constraints.source_ids is None or c.source_id in constraints.source_ids)
        ]
        hits.sort(key=lambda c: c.similarity, reverse=True)
        return hits[: constraints.limit]


class FakeGenerator:
    model = "claude-haiku-4-5-20251001"

    def __init__(self, answer: str = "Closures capture variables [1].", input_tokens=1200, output_tokens=300):
        self.answer = answer
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls: list[tuple[str, str]] = []

    def generate(self, system_prompt: str, user_prompt: str) -> GenerationResult:
        self.calls.append((system_prompt, user_prompt))
        return GenerationResult(
            answer=self.answer,
            model=self.model,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
        )


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def make_candidate():
    """Factory for SearchCandidates with sensible defaults."""

    def _make(
        chunk_id: str,
        source_id: str = "vid-a",
        similarity: float = 0.9,
        embedding=None,
        text: Optional[str] = None,
        start: float = 65.0,
        created_at: Optional[datetime] = None,
        title: Optional[str] = "Intro to Python",
        url: Optional[str] = None,
    ) -> SearchCandidate:
        return SearchCandidate(
            chunk_id=chunk_id,
            source_id=source_id,
            text=text or f"Transcript text for {chunk_id}.",
            start_seconds=start,
            end_seconds=start + 30,
            similarity=similarity,
            source_title=title,
            source_url=url,
            source_created_at=created_at,
            embedding=embedding,
        )

    return _make


@pytest.fixture
def make_result(make_candidate):
    """Factory for RankedResults; rank_score defaults to the similarity."""

    def _make(chunk_id: str, rank_score: Optional[float] = None, **kwargs) -> RankedResult:
        candidate = make_candidate(chunk_id, **kwargs)
        score = candidate.similarity if rank_score is None else rank_score
        return RankedResult.from_candidate(
            candidate, score, RankBreakdown(similarity=candidate.similarity)
        )

    return _make


@pytest.fixture
def fake_embed() -> FakeEmbed:
    return FakeEmbed()


@pytest.fixture
def fake_generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def unavailable_store() -> FakeVectorStore:
    return FakeVectorStore(error=StoreUnavailable("connection refused"))


@pytest.fixture
def make_store():
    return FakeVectorStore
