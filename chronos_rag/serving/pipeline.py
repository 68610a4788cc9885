"""
Chat Serving Pipeline
----------------------
Orchestrates one chat turn end to end:

    student question
        |
        v
    SessionLedger (continue the pair's session if active < 24h)
        |
        v
    SearchOrchestrator (cache -> embed -> vector search -> rank)
        |
        v
    build_context (token budget) + recent conversation
        |
        v
    AnthropicGenerator (grounded system prompt)
        |
        v
    SessionLedger (user + assistant messages, source refs, cost)
        |
        v
    ChatResult (answer + citations + context stats + cost)

Search failures never reach the student as stack traces: an unavailable
store becomes status="unavailable" and an empty search becomes
status="no_results", each with a fixed message.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Literal, Optional

from langsmith import traceable
from loguru import logger

from chronos_rag.errors import SessionNotFound, StoreUnavailable
from chronos_rag.generation.context_builder import (
    ContextOptions,
    build_context,
    build_conversation_prompt,
    build_system_prompt,
    context_stats,
    extract_citations,
)
from chronos_rag.generation.generator import AnthropicGenerator, Generator
from chronos_rag.generation.prompts import NO_RESULTS_RESPONSE, UNAVAILABLE_RESPONSE
from chronos_rag.retrieval.cache import InMemoryCacheStore, RedisCacheStore, SearchCache
from chronos_rag.retrieval.lookups import LocalCatalog
from chronos_rag.retrieval.observer import CacheMetrics
from chronos_rag.retrieval.ranking import RankingEngine
from chronos_rag.retrieval.search import SearchOptions, SearchOrchestrator
from chronos_rag.retrieval.vector_store import FaissChunkStore
from chronos_rag.schemas import Citation, FormattedContext, RankedResult
from chronos_rag.sessions.costs import CostBreakdown, calculate_complete_cost
from chronos_rag.sessions.ledger import SessionLedger, SourceReference
from chronos_rag.sessions.titles import generate_session_title

ChatStatus = Literal["ok", "no_results", "unavailable"]


# ---------------------------------------------------------------------------
# Result schema
# ---------------------------------------------------------------------------

@dataclass
class ChatResult:
    """
    Full output from a single chat turn.

    Timing fields are in milliseconds.  cost covers generation plus the
    one query embedding; it is None when no generation happened.
    """

    query: str
    status: ChatStatus
    answer: str
    session_id: Optional[str] = None
    citations: list[Citation] = field(default_factory=list)
    context_stats: dict = field(default_factory=dict)

    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost: Optional[CostBreakdown] = None

    search_ms: float = 0.0
    generation_ms: float = 0.0

    @property
    def total_ms(self) -> float:
        return self.search_ms + self.generation_ms

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "status": self.status,
            "answer": self.answer,
            "session_id": self.session_id,
            "citations": [c.model_dump() for c in self.citations],
            "context": self.context_stats,
            "latency_ms": {
                "search": round(self.search_ms, 1),
                "generation": round(self.generation_ms, 1),
                "total": round(self.total_ms, 1),
            },
            "tokens": {
                "input": self.input_tokens,
                "output": self.output_tokens,
                "total": self.input_tokens + self.output_tokens,
            },
            "model": self.model,
            "cost_usd": round(self.cost.total_cost, 6) if self.cost else 0.0,
        }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class ChatPipeline:
    """
    Glues search, context assembly, generation and the session ledger.

    Usage:
        pipeline = ChatPipeline.from_config(load_config())
        result = pipeline.ask("How do I set up routing?", "student-1", "creator-1")
        print(result.answer)
        for c in result.citations:
            print(c.source_title, c.timestamp_formatted)
    """

    def __init__(
        self,
        orchestrator: SearchOrchestrator,
        generator: Generator,
        ledger: SessionLedger,
        context_options: ContextOptions | None = None,
        history_window: int = 5,
        titler: Callable[[str], str] | None = None,
        custom_instructions: str | None = None,
        default_search_options: SearchOptions | None = None,
        scope_to_creator: bool = True,
    ) -> None:
        self.orchestrator = orchestrator
        self.generator = generator
        self.ledger = ledger
        self.context_options = context_options or ContextOptions()
        self.history_window = history_window
        self.titler = titler
        self.custom_instructions = custom_instructions
        self.default_search_options = default_search_options
        self.scope_to_creator = scope_to_creator

    @classmethod
    def from_config(cls, config) -> "ChatPipeline":
        """Wire the production collaborators described by an AppConfig."""
        from chronos_rag.embedding.embedder import Embedder  # lazy import: OpenAI client

        logger.info(f"[ChatPipeline] Loading index from {config.index.index_dir}...")
        store = FaissChunkStore.load(Path(config.index.index_dir))
        catalog = LocalCatalog.load(Path(config.index.catalog_path))
        ledger = SessionLedger.load(Path(config.sessions.path))

        cache = None
        if config.cache.enabled:
            backend = (
                RedisCacheStore(config.redis_url)
                if config.cache.backend == "redis"
                else InMemoryCacheStore()
            )
            cache = SearchCache(backend)

        embedder = Embedder(
            model=config.embedding.model,
            dimensions=config.embedding.dimensions,
            batch_size=config.embedding.batch_size,
        )
        orchestrator = SearchOrchestrator(
            embed=embedder.embed_query,
            vector_store=store,
            ranking_engine=RankingEngine(catalog=catalog, usage=catalog, interactions=ledger),
            cache=cache,
            scopes=catalog,
            observer=CacheMetrics(),
        )
        generator = AnthropicGenerator(
            model=config.generation.model,
            max_tokens=config.generation.max_tokens,
            temperature=config.generation.temperature,
        )

        logger.info(
            f"[ChatPipeline] Ready | {store.faiss_index.ntotal} vectors | "
            f"model={generator.model} | cache={config.cache.backend if cache else 'off'}"
        )
        return cls(
            orchestrator=orchestrator,
            generator=generator,
            ledger=ledger,
            context_options=config.to_context_options(),
            history_window=config.sessions.history_window,
            titler=generate_session_title if config.sessions.generate_titles else None,
            custom_instructions=config.generation.custom_instructions,
            default_search_options=config.to_search_options(),
            scope_to_creator=bool(catalog.sources),
        )

    @traceable(name="chat_turn", run_type="chain")
    def ask(
        self,
        query: str,
        student_id: str,
        creator_id: str,
        session_id: str | None = None,
        search_options: SearchOptions | None = None,
        collection_id: str | None = None,
    ) -> ChatResult:
        """
        Answer one question inside a chat session.

        Raises:
            InvalidQuery:    the question or search options were rejected.
            SessionNotFound: session_id does not exist.
        """
        logger.info(f"[ChatPipeline] Query: {query[:100]!r}")

        if session_id:
            session = self.ledger.get_session(session_id)
            if session is None:
                raise SessionNotFound(session_id)
        else:
            session = self.ledger.get_or_create_session(student_id, creator_id)
        history = self.ledger.recent_turns(session.session_id, self.history_window)

        # -- 1. Search -----------------------------------------------------------
        t0 = time.perf_counter()
        try:
            results = self._search(query, student_id, creator_id, search_options, collection_id)
        except StoreUnavailable as exc:
            logger.error(f"[ChatPipeline] Vector store unavailable: {exc}")
            return ChatResult(
                query=query,
                status="unavailable",
                answer=UNAVAILABLE_RESPONSE,
                session_id=session.session_id,
            )
        search_ms = (time.perf_counter() - t0) * 1000

        is_first_turn = not history
        self.ledger.add_message(session.session_id, "user", query)

        if not results:
            self.ledger.add_message(session.session_id, "assistant", NO_RESULTS_RESPONSE)
            self._maybe_title(session.session_id, query, is_first_turn)
            return ChatResult(
                query=query,
                status="no_results",
                answer=NO_RESULTS_RESPONSE,
                session_id=session.session_id,
                search_ms=search_ms,
            )

        # -- 2. Context ----------------------------------------------------------
        context = build_context(results, self.context_options)
        system_prompt = build_system_prompt(
            build_conversation_prompt(history, context, self.history_window),
            self.custom_instructions,
        )

        # -- 3. Generate ---------------------------------------------------------
        t1 = time.perf_counter()
        generation = self.generator.generate(system_prompt, query)
        generation_ms = (time.perf_counter() - t1) * 1000

        cost = calculate_complete_cost(
            input_tokens=generation.input_tokens,
            output_tokens=generation.output_tokens,
            model=generation.model,
            embedding_queries=1,
        )

        # -- 4. Record -----------------------------------------------------------
        self.ledger.add_message(
            session.session_id,
            "assistant",
            generation.answer,
            source_refs=_source_refs(context),
            input_tokens=generation.input_tokens,
            output_tokens=generation.output_tokens,
            model=generation.model,
            cost_usd=cost.total_cost,
        )
        self._maybe_title(session.session_id, query, is_first_turn)

        # Citations follow the chunks that actually made it into the context
        included = _included_results(results, context)

        logger.info(
            f"[ChatPipeline] Complete | search={search_ms:.0f}ms "
            f"generate={generation_ms:.0f}ms | chunks={context.total_chunks} | "
            f"tokens={generation.total_tokens} | cost=${cost.total_cost:.5f}"
        )

        return ChatResult(
            query=query,
            status="ok",
            answer=generation.answer,
            session_id=session.session_id,
            citations=extract_citations(included),
            context_stats={
                "total_chunks": context.total_chunks,
                "total_tokens": context.total_tokens,
                **context_stats(context, self.context_options.max_tokens),
            },
            model=generation.model,
            input_tokens=generation.input_tokens,
            output_tokens=generation.output_tokens,
            cost=cost,
            search_ms=search_ms,
            generation_ms=generation_ms,
        )

    # --- Internals ------------------------------------------------------------

    def _search(
        self,
        query: str,
        student_id: str,
        creator_id: str,
        search_options,
        collection_id: str | None,
    ) -> list[RankedResult]:
        options = search_options or self.default_search_options or SearchOptions()
        if options.affinity_subject_id is None:
            options = replace(options, affinity_subject_id=student_id)

        if collection_id:
            return self.orchestrator.search_within_collection(collection_id, query, options)
        if self.scope_to_creator and options.source_ids is None:
            return self.orchestrator.search_owner_content(creator_id, query, options)
        return self.orchestrator.enhanced_search(query, options)

    def _maybe_title(self, session_id: str, first_message: str, is_first_turn: bool) -> None:
        if not (is_first_turn and self.titler):
            return
        session = self.ledger.get_session(session_id)
        if session is not None and not session.title:
            self.ledger.set_title(session_id, self.titler(first_message))


def _source_refs(context: FormattedContext) -> list[SourceReference]:
    return [
        SourceReference(
            source_id=s.source_id,
            source_title=s.source_title,
            start_seconds=s.timestamps[0].start if s.timestamps else 0.0,
        )
        for s in context.sources
    ]


def _included_results(results: list[RankedResult], context: FormattedContext) -> list[RankedResult]:
    included_ids = {ts.chunk_id for s in context.sources for ts in s.timestamps}
    return [r for r in results if r.chunk_id in included_ids]
