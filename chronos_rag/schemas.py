"""
Core Pydantic schemas for the Chronos RAG core.

Every stage shares these models: the vector store produces
SearchCandidates, the ranking engine turns them into RankedResults, the
context builder turns those into a FormattedContext and Citations.
Candidates carry denormalised source metadata so no stage after the
vector store needs a join to cite its origin.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, model_validator

UNKNOWN_SOURCE_TITLE = "Unknown Video"


# --- Stored content -----------------------------------------------------------

class Chunk(BaseModel):
    """
    A fixed span of transcribed source content with its own embedding.

    Chunks are immutable once embedded.  The embedding is kept out of
    serialised dumps; the vector index owns the vectors on disk.
    """

    chunk_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_id: str                       # Parent video id
    text: str
    start_seconds: float
    end_seconds: float
    word_count: int = 0                  # Computed from text when omitted
    embedding: Optional[list[float]] = Field(default=None, exclude=True, repr=False)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_span(self) -> "Chunk":
        if self.start_seconds >= self.end_seconds:
            raise ValueError(
                f"Chunk {self.chunk_id}: start_seconds ({self.start_seconds}) "
                f"must be before end_seconds ({self.end_seconds})"
            )
        if not self.word_count:
            self.word_count = len(self.text.split())
        return self


class SourceInfo(BaseModel):
    """Parent-source (video) metadata used for denormalisation and scoping."""

    source_id: str
    title: str = UNKNOWN_SOURCE_TITLE
    url: Optional[str] = None
    owner_id: Optional[str] = None
    created_at: Optional[datetime] = None
    status: str = "completed"
    is_deleted: bool = False

    @property
    def is_published(self) -> bool:
        return self.status == "completed" and not self.is_deleted


class UsageRecord(BaseModel):
    """One day of usage aggregates for a source."""

    source_id: str
    day: date
    views: int = 0
    interactions: int = 0
    completion_rate: float = 0.0         # Percentage, 0-100


# --- Retrieval ----------------------------------------------------------------

class SearchCandidate(BaseModel):
    """A chunk returned by a similarity query, before ranking."""

    chunk_id: str
    source_id: str
    text: str
    start_seconds: float
    end_seconds: float
    similarity: float                    # Cosine similarity, practically [0, 1]

    # Provenance (copied from the parent source for zero-join citations)
    source_title: Optional[str] = None
    source_url: Optional[str] = None
    owner_id: Optional[str] = None
    source_created_at: Optional[datetime] = None

    metadata: dict[str, Any] = Field(default_factory=dict)
    embedding: Optional[list[float]] = Field(default=None, exclude=True, repr=False)

    @classmethod
    def from_chunk(
        cls,
        chunk: Chunk,
        similarity: float,
        source: SourceInfo | None = None,
    ) -> "SearchCandidate":
        return cls(
            chunk_id=chunk.chunk_id,
            source_id=chunk.source_id,
            text=chunk.text,
            start_seconds=chunk.start_seconds,
            end_seconds=chunk.end_seconds,
            similarity=similarity,
            source_title=source.title if source else None,
            source_url=source.url if source else None,
            owner_id=source.owner_id if source else None,
            source_created_at=source.created_at if source else None,
            metadata=dict(chunk.metadata),
            embedding=chunk.embedding,
        )

    @property
    def display_title(self) -> str:
        return self.source_title or UNKNOWN_SOURCE_TITLE


class RankBreakdown(BaseModel):
    """Per-component scores behind a rank_score."""

    similarity: float = 0.0
    recency: float = 0.0
    popularity: float = 0.0
    affinity: float = 0.0
    degraded: list[str] = Field(default_factory=list)   # Components whose lookup failed


class RankedResult(SearchCandidate):
    """A candidate with its combined relevance score."""

    rank_score: float
    rank_breakdown: RankBreakdown = Field(default_factory=RankBreakdown)

    @classmethod
    def from_candidate(
        cls,
        candidate: SearchCandidate,
        rank_score: float,
        breakdown: RankBreakdown,
    ) -> "RankedResult":
        return cls(
            **candidate.model_dump(exclude={"rank_score", "rank_breakdown"}),
            embedding=candidate.embedding,
            rank_score=rank_score,
            rank_breakdown=breakdown,
        )


# --- Context ------------------------------------------------------------------

class TimestampRange(BaseModel):
    start: float
    end: float
    chunk_id: str


class SourceAttribution(BaseModel):
    """Which chunks of one source made it into a built context."""

    source_id: str
    source_title: str
    source_url: Optional[str] = None
    chunks_used: int = 0
    timestamps: list[TimestampRange] = Field(default_factory=list)


class FormattedContext(BaseModel):
    """Token-budgeted context block handed to the text generator."""

    context: str
    sources: list[SourceAttribution] = Field(default_factory=list)
    total_chunks: int = 0
    total_tokens: int = 0
    truncated: bool = False


class Citation(BaseModel):
    """UI-facing projection of a ranked result."""

    index: int
    source_id: str
    source_title: str
    source_url: Optional[str] = None
    timestamp: float
    timestamp_formatted: str
    preview: str
    relevance_score: float


class ConversationTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str
