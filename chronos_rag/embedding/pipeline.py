"""
Index Build Pipeline - Embed, Index
------------------------------------
Reads transcript chunks produced by ingestion (a JSON list of Chunk
records), embeds them with the OpenAI embedder and builds the FAISS
chunk store, denormalising source metadata from the local catalog.

LangSmith traces every embedding call automatically via the
@traceable decorator in embedder.py.
"""
from __future__ import annotations

from pathlib import Path

import numpy as np
from loguru import logger
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn

from chronos_rag.embedding.embedder import Embedder
from chronos_rag.retrieval.lookups import LocalCatalog
from chronos_rag.retrieval.vector_store import FaissChunkStore
from chronos_rag.schemas import Chunk
from chronos_rag.utils.helpers import load_json, utcnow

console = Console()


def load_chunks(chunks_path: str | Path) -> list[Chunk]:
    """Load transcript chunks; malformed records are skipped with a warning."""
    p = Path(chunks_path)
    if not p.exists():
        raise FileNotFoundError(f"Chunk file not found: {p}")

    chunks: list[Chunk] = []
    for i, raw in enumerate(load_json(p)):
        try:
            chunks.append(Chunk(**raw))
        except ValueError as exc:
            logger.warning(f"[IndexBuild] Skipping chunk #{i}: {exc}")

    logger.info(f"[IndexBuild] Loaded {len(chunks)} chunks from {p}")
    return chunks


def build_index(
    chunks_path: str | Path = "data/chunks/all_chunks.json",
    catalog_path: str | Path = "data/catalog.json",
    index_dir: str | Path = "data/index",
    embedder: Embedder | None = None,
    batch_size: int = 512,
) -> dict:
    """
    Execute the full index build:
      1. Load transcript chunks
      2. Embed with OpenAI
      3. Build and save the FAISS chunk store

    Returns:
        Summary dict with counts and cost estimate.
    """
    started_at = utcnow()

    console.print()
    console.print(
        Panel(
            "[bold cyan]Chronos RAG[/bold cyan]\n"
            "[white]Index build - Embedding, Indexing[/white]",
            box=box.DOUBLE_EDGE,
            expand=False,
        )
    )

    # -- Step 1: Load chunks ---------------------------------------------------
    console.print("\n[bold cyan]Step 1 / 3 - Loading transcript chunks[/bold cyan]")
    chunks = load_chunks(chunks_path)
    if not chunks:
        raise ValueError(f"No chunks found in {chunks_path}")
    catalog = LocalCatalog.load(Path(catalog_path))
    console.print(
        f"[green][OK] {len(chunks)} chunks from "
        f"{len({c.source_id for c in chunks})} sources[/green]"
    )

    # -- Step 2: Embed ---------------------------------------------------------
    embedder = embedder or Embedder(batch_size=batch_size)
    console.print(f"\n[bold cyan]Step 2 / 3 - Embedding chunks ({embedder.model})[/bold cyan]")
    texts = [c.text for c in chunks]

    batches: list[np.ndarray] = []
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task(f"[cyan]Embedding {len(texts)} chunks...[/cyan]", total=len(texts))
        for i in range(0, len(texts), embedder.batch_size):
            batch_texts = texts[i: i + embedder.batch_size]
            batches.append(embedder.embed_texts(batch_texts))
            progress.advance(task, advance=len(batch_texts))

    embeddings = np.vstack(batches)
    usage = embedder.usage_summary()
    console.print(f"[green][OK] {len(embeddings)} embeddings generated[/green]")
    console.print(f"  Total tokens    : {usage['total_tokens_used']:,}")
    console.print(f"  Estimated cost  : ${usage['estimated_cost_usd']:.4f} USD")

    # -- Step 3: Build index ---------------------------------------------------
    console.print("\n[bold cyan]Step 3 / 3 - Building FAISS index[/bold cyan]")
    referenced = {c.source_id for c in chunks}
    sources = [s for sid, s in catalog.sources.items() if sid in referenced]
    missing = referenced - set(catalog.sources)
    if missing:
        logger.warning(f"[IndexBuild] {len(missing)} sources have no catalog entry")

    store = FaissChunkStore(dimensions=embeddings.shape[1])
    store.build_from_chunks(chunks, embeddings, sources)
    store.save(Path(index_dir))

    summary = {
        "started_at": started_at.isoformat(),
        "completed_at": utcnow().isoformat(),
        "chunks_indexed": len(chunks),
        "sources_indexed": len(referenced),
        "sources_without_metadata": len(missing),
        "index_vectors": store.faiss_index.ntotal,
        "embedding_model": usage["model"],
        "tokens_used": usage["total_tokens_used"],
        "estimated_cost_usd": usage["estimated_cost_usd"],
        "index_dir": str(index_dir),
    }

    console.print()
    console.print(
        Panel(
            "[bold green]Index build complete[/bold green]\n\n"
            f"  Chunks      : {len(chunks):,}\n"
            f"  Sources     : {len(referenced):,}\n"
            f"  Vectors     : {store.faiss_index.ntotal:,}\n"
            f"  Tokens used : {usage['total_tokens_used']:,}\n"
            f"  Cost        : ${usage['estimated_cost_usd']:.4f} USD",
            box=box.DOUBLE_EDGE,
            border_style="green",
            expand=False,
        )
    )
    return summary
