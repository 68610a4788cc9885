"""
Chronos RAG - Web API Server
-----------------------------
FastAPI server that wraps the ChatPipeline.

Endpoints:
  GET  /api/health            -> pipeline status, vector count, cache metrics
  POST /api/search            -> ranked search results (no generation)
  POST /api/chat              -> one chat turn with citations and cost
  POST /api/cache/invalidate  -> drop cached searches for a source (or all)

Run from the project root:
    uvicorn app.server:app --reload --port 8000

The pipeline loads config/config.yaml and data/ relative to CWD.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import replace
from functools import partial
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field

from chronos_rag.errors import InvalidQuery, SessionNotFound, StoreUnavailable
from chronos_rag.generation.prompts import UNAVAILABLE_RESPONSE
from chronos_rag.retrieval.search import SearchOptions

load_dotenv()

CONFIG_PATH = "config/config.yaml"

# ---------------------------------------------------------------------------
# Pipeline singleton
# ---------------------------------------------------------------------------

_pipeline = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the chat pipeline once at startup; persist sessions on shutdown."""
    global _pipeline
    from chronos_rag.config import load_config
    from chronos_rag.serving.pipeline import ChatPipeline
    from chronos_rag.utils.logger import setup_logger

    config = load_config(CONFIG_PATH)
    setup_logger(config.logging.level, config.logging.file, config.logging.json_file)
    try:
        logger.info("[Server] Loading chat pipeline...")
        _pipeline = ChatPipeline.from_config(config)
    except StoreUnavailable as exc:
        logger.error(
            f"[Server] Index not available: {exc}\n"
            "Build it first: python -m chronos_rag.main build-index"
        )
        raise
    yield
    _pipeline.ledger.save()
    _pipeline = None
    logger.info("[Server] Pipeline unloaded.")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Chronos RAG API",
    description="Semantic search and grounded chat over video course transcripts",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class SearchRequest(BaseModel):
    query: str
    match_count: int = 5
    similarity_threshold: Optional[float] = None
    source_ids: Optional[list[str]] = None
    collection_id: Optional[str] = None
    owner_id: Optional[str] = None
    student_id: Optional[str] = None


class SearchHit(BaseModel):
    chunk_id: str
    source_id: str
    source_title: str
    source_url: Optional[str] = None
    text: str
    start_seconds: float
    end_seconds: float
    similarity: float
    rank_score: float


class SearchResponse(BaseModel):
    query: str
    results: list[SearchHit]


class ChatRequest(BaseModel):
    message: str
    student_id: str
    creator_id: str
    session_id: Optional[str] = None
    collection_id: Optional[str] = None


class InvalidateRequest(BaseModel):
    source_id: Optional[str] = Field(None, description="Omit to flush every cached search")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _require_pipeline():
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not ready")
    return _pipeline


def _search_options(request: SearchRequest) -> SearchOptions:
    base = _pipeline.default_search_options or SearchOptions()
    overrides = {
        "match_count": request.match_count,
        "source_ids": request.source_ids,
        "affinity_subject_id": request.student_id,
    }
    if request.similarity_threshold is not None:
        overrides["similarity_threshold"] = request.similarity_threshold
    return replace(base, **overrides)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health():
    """Return pipeline status, index size and cache metrics."""
    pipeline = _require_pipeline()
    orchestrator = pipeline.orchestrator
    observer = orchestrator.observer
    return {
        "status": "ok",
        "vectors": getattr(getattr(orchestrator.vector_store, "faiss_index", None), "ntotal", None),
        "model": pipeline.generator.model,
        "cache_enabled": orchestrator.cache is not None,
        "cache": observer.snapshot() if hasattr(observer, "snapshot") else None,
    }


@app.post("/api/search", response_model=SearchResponse)
async def search(request: SearchRequest):
    """
    Ranked semantic search without generation.

    The blocking search runs in a thread-pool executor to avoid stalling
    FastAPI's async event loop.
    """
    pipeline = _require_pipeline()
    options = _search_options(request)
    orchestrator = pipeline.orchestrator

    if request.collection_id:
        call = partial(orchestrator.search_within_collection, request.collection_id, request.query, options)
    elif request.owner_id:
        call = partial(orchestrator.search_owner_content, request.owner_id, request.query, options)
    else:
        call = partial(orchestrator.enhanced_search, request.query, options)

    logger.info(f"[API] Search | query={request.query[:80]!r}")
    loop = asyncio.get_running_loop()
    try:
        results = await loop.run_in_executor(None, call)
    except InvalidQuery as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except StoreUnavailable as exc:
        logger.error(f"[API] Search unavailable: {exc}")
        raise HTTPException(status_code=503, detail=UNAVAILABLE_RESPONSE)

    return SearchResponse(
        query=request.query,
        results=[
            SearchHit(
                chunk_id=r.chunk_id,
                source_id=r.source_id,
                source_title=r.display_title,
                source_url=r.source_url,
                text=r.text,
                start_seconds=r.start_seconds,
                end_seconds=r.end_seconds,
                similarity=r.similarity,
                rank_score=r.rank_score,
            )
            for r in results
        ],
    )


@app.post("/api/chat")
async def chat(request: ChatRequest):
    """Answer one question in the student's session."""
    pipeline = _require_pipeline()

    message = request.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message cannot be empty")

    logger.info(
        f"[API] Chat | student={request.student_id} creator={request.creator_id} | "
        f"query={message[:80]!r}"
    )

    loop = asyncio.get_running_loop()
    try:
        result = await loop.run_in_executor(
            None,
            partial(
                pipeline.ask,
                message,
                request.student_id,
                request.creator_id,
                session_id=request.session_id,
                collection_id=request.collection_id,
            ),
        )
    except InvalidQuery as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")

    if result.status == "unavailable":
        raise HTTPException(status_code=503, detail=result.answer)
    return result.to_dict()


@app.post("/api/cache/invalidate")
async def invalidate_cache(request: InvalidateRequest):
    """Drop cached searches that filtered on or returned a source."""
    orchestrator = _require_pipeline().orchestrator
    if request.source_id:
        removed = orchestrator.invalidate_source(request.source_id)
    else:
        removed = orchestrator.invalidate_all()
    return {"source_id": request.source_id, "removed": removed}
