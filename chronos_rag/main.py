"""
Chronos RAG - CLI Entry Point
------------------------------
Exposes Typer commands for index building, search and chat.

Usage:
    python -m chronos_rag.main build-index                 # Embed chunks, build FAISS index
    python -m chronos_rag.main search "what is a closure?"  # Ranked search results
    python -m chronos_rag.main chat                        # Interactive chat
    python -m chronos_rag.main chat -q "..." --json         # Single-shot chat
    python -m chronos_rag.main invalidate --source <id>     # Drop cached searches
    python -m chronos_rag.main costs --messages 20          # Session cost estimate
    python -m chronos_rag.main export-session <id> -f json  # Export a chat session
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from chronos_rag.config import load_config
from chronos_rag.errors import InvalidQuery, StoreUnavailable
from chronos_rag.sessions.costs import (
    DEFAULT_CHAT_MODEL,
    cost_optimization_suggestions,
    estimate_session_cost,
    format_cost,
    project_monthly_cost,
)
from chronos_rag.utils.helpers import ensure_dirs, format_timestamp, truncate_text
from chronos_rag.utils.logger import setup_logger

app = typer.Typer(
    name="chronos-rag",
    help="Chronos RAG - video course search and chat CLI",
    add_completion=False,
)
console = Console()

ConfigOption = typer.Option(
    "config/config.yaml", "--config", "-c", help="Path to config YAML"
)


def _setup(config_path: str):
    config = load_config(config_path)
    setup_logger(config.logging.level, config.logging.file, config.logging.json_file)
    return config


def _load_pipeline(config):
    from chronos_rag.serving.pipeline import ChatPipeline

    if not Path(config.index.index_dir).exists():
        console.print(
            f"[red]Index directory not found: {config.index.index_dir}[/red]\n"
            "Build it first: [bold]python -m chronos_rag.main build-index[/bold]"
        )
        raise typer.Exit(1)

    with console.status("[cyan]Loading FAISS index...[/cyan]"):
        try:
            return ChatPipeline.from_config(config)
        except StoreUnavailable as exc:
            console.print(f"[red]{exc}[/red]")
            raise typer.Exit(1)


# --- Commands -----------------------------------------------------------------

@app.command("build-index")
def build_index(
    config: str = ConfigOption,
    chunks: Optional[str] = typer.Option(None, "--chunks", help="Chunk JSON file"),
) -> None:
    """Embed transcript chunks and build the FAISS index."""
    cfg = _setup(config)
    from chronos_rag.embedding.embedder import Embedder
    from chronos_rag.embedding.pipeline import build_index as run_build

    run_build(
        chunks_path=chunks or cfg.index.chunks_path,
        catalog_path=cfg.index.catalog_path,
        index_dir=cfg.index.index_dir,
        embedder=Embedder(
            model=cfg.embedding.model,
            dimensions=cfg.embedding.dimensions,
            batch_size=cfg.embedding.batch_size,
        ),
    )


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    config: str = ConfigOption,
    count: int = typer.Option(5, "--count", "-n", help="Results to return"),
    threshold: Optional[float] = typer.Option(None, "--threshold", help="Minimum similarity"),
    source: Optional[list[str]] = typer.Option(None, "--source", "-s", help="Restrict to source id"),
    collection: Optional[str] = typer.Option(None, "--collection", help="Restrict to a collection"),
    json_out: bool = typer.Option(False, "--json", help="Print results as JSON"),
) -> None:
    """Run a ranked semantic search and print the results."""
    cfg = _setup(config)
    pipeline = _load_pipeline(cfg)

    overrides = {"match_count": count, "source_ids": source or None}
    if threshold is not None:
        overrides["similarity_threshold"] = threshold
    options = cfg.to_search_options(**overrides)

    orchestrator = pipeline.orchestrator
    try:
        if collection:
            results = orchestrator.search_within_collection(collection, query, options)
        else:
            results = orchestrator.enhanced_search(query, options)
    except InvalidQuery as exc:
        console.print(f"[red]Invalid query:[/red] {exc}")
        raise typer.Exit(2)
    except StoreUnavailable as exc:
        logger.error(f"[CLI] {exc}")
        console.print("[red]Search is temporarily unavailable.[/red]")
        raise typer.Exit(1)

    if json_out:
        console.print_json(json.dumps([r.model_dump(mode="json") for r in results]))
        return

    if not results:
        console.print("[yellow]No results above the similarity threshold.[/yellow]")
        return

    table = Table(
        "No.", "Video", "At", "Rank", "Sim", "Text",
        box=box.SIMPLE,
        show_header=True,
        header_style="bold dim",
    )
    for i, r in enumerate(results, start=1):
        table.add_row(
            str(i),
            r.display_title,
            format_timestamp(r.start_seconds),
            f"{r.rank_score:.3f}",
            f"{r.similarity:.3f}",
            truncate_text(r.text, 80),
        )
    console.print(table)


@app.command()
def chat(
    config: str = ConfigOption,
    query: Optional[str] = typer.Option(
        None, "--query", "-q", help="Single question (omit for interactive loop)"
    ),
    student: str = typer.Option("cli-student", "--student", help="Student id"),
    creator: str = typer.Option("cli-creator", "--creator", help="Creator id"),
    collection: Optional[str] = typer.Option(None, "--collection", help="Restrict to a collection"),
    json_out: bool = typer.Option(False, "--json", help="Print result as JSON (single-query mode only)"),
) -> None:
    """Ask questions about the indexed course videos."""
    cfg = _setup(config)
    pipeline = _load_pipeline(cfg)

    console.print(
        f"[green][OK] Index loaded[/green] "
        f"| {pipeline.orchestrator.vector_store.faiss_index.ntotal:,} vectors "
        f"| model={pipeline.generator.model}"
    )

    def ask(text: str) -> None:
        try:
            result = pipeline.ask(text, student, creator, collection_id=collection)
        except InvalidQuery as exc:
            console.print(f"[red]Invalid question:[/red] {exc}")
            return
        if json_out:
            console.print_json(json.dumps(result.to_dict(), indent=2))
        else:
            _print_result(result)

    try:
        # --- Single-shot mode -------------------------------------------------
        if query:
            ask(query)
            return

        # --- Interactive loop -------------------------------------------------
        console.print()
        console.print("[bold]Ask anything about the course videos.[/bold]")
        console.print("[dim]Type 'exit', 'quit', or press Ctrl+C to quit.[/dim]\n")

        while True:
            try:
                raw = console.input("[bold cyan]You[/bold cyan] > ").strip()
            except (EOFError, KeyboardInterrupt):
                console.print("\n[dim]Goodbye.[/dim]")
                break

            if not raw:
                continue
            if raw.lower() in {"exit", "quit", "q"}:
                console.print("[dim]Goodbye.[/dim]")
                break

            with console.status("[cyan]Thinking...[/cyan]"):
                ask(raw)
    finally:
        pipeline.ledger.save()


def _print_result(result) -> None:
    """Render a ChatResult to the terminal using Rich."""
    if result.status != "ok":
        style = "red" if result.status == "unavailable" else "yellow"
        console.print(Panel(result.answer, border_style=style, expand=False))
        return

    console.print()
    console.print(
        Panel(
            Markdown(result.answer),
            title="[bold green]Answer[/bold green]",
            border_style="green",
            expand=True,
        )
    )

    if result.citations:
        table = Table(
            "No.", "Video", "At", "Score", "Preview",
            box=box.SIMPLE,
            show_header=True,
            header_style="bold dim",
        )
        for cit in result.citations:
            table.add_row(
                str(cit.index),
                cit.source_title,
                cit.timestamp_formatted,
                f"{cit.relevance_score:.3f}",
                truncate_text(cit.preview, 60),
            )
        console.print(table)

    cost = result.cost.total_cost if result.cost else 0.0
    console.print(
        f"[dim]{result.total_ms:.0f}ms | {result.input_tokens + result.output_tokens} tokens "
        f"| {format_cost(cost)} | {result.model}[/dim]"
    )


@app.command()
def invalidate(
    config: str = ConfigOption,
    source: Optional[str] = typer.Option(None, "--source", "-s", help="Source id to invalidate"),
    all_entries: bool = typer.Option(False, "--all", help="Flush every cached search"),
) -> None:
    """Drop cached search results from the shared Redis cache."""
    cfg = _setup(config)
    if not (source or all_entries):
        console.print("[red]Pass --source <id> or --all[/red]")
        raise typer.Exit(2)

    if cfg.cache.backend != "redis":
        console.print(
            "[yellow]The memory cache lives inside each server process; "
            "use POST /api/cache/invalidate on the running server instead.[/yellow]"
        )
        raise typer.Exit(1)

    from chronos_rag.retrieval.cache import RedisCacheStore, SearchCache

    cache = SearchCache(RedisCacheStore(cfg.redis_url))
    removed = cache.invalidate_all() if all_entries else cache.invalidate_source(source)
    console.print(f"[green][OK] Removed {removed} cached searches[/green]")


@app.command()
def costs(
    messages: int = typer.Option(20, "--messages", "-m", help="Messages per session"),
    sessions_per_day: int = typer.Option(50, "--sessions-per-day", help="Sessions per day"),
    model: str = typer.Option(DEFAULT_CHAT_MODEL, "--model", help="Chat model"),
) -> None:
    """Estimate per-session and monthly chat costs."""
    breakdown = estimate_session_cost(messages, model=model)
    daily = breakdown.total_cost * sessions_per_day
    projection = project_monthly_cost(
        [daily] * 7,
        total_messages=messages * sessions_per_day * 7,
        total_sessions=sessions_per_day * 7,
    )

    table = Table("Metric", "Value", box=box.ROUNDED, header_style="bold cyan")
    table.add_row("Model", model)
    table.add_row("Input tokens / session", f"{breakdown.input_tokens:,}")
    table.add_row("Output tokens / session", f"{breakdown.output_tokens:,}")
    table.add_row("Embedding queries / session", str(breakdown.embedding_queries))
    table.add_row("Cost / session", format_cost(breakdown.total_cost))
    table.add_row("Cost / message", format_cost(projection["avg_cost_per_message"]))
    table.add_row("Daily cost", format_cost(projection["current_daily_cost"]))
    table.add_row("Projected monthly", format_cost(projection["projected_monthly_cost"]))
    console.print(table)

    for hint in cost_optimization_suggestions(breakdown, messages):
        console.print(
            f"[bold]{hint.priority.upper()}[/bold] {hint.title} "
            f"[dim](~{hint.potential_savings_percent}% savings)[/dim]\n  {hint.description}"
        )


@app.command("export-session")
def export_session(
    session_id: str = typer.Argument(..., help="Session id"),
    config: str = ConfigOption,
    fmt: str = typer.Option("markdown", "--format", "-f", help="markdown | json"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to a file instead of stdout"),
) -> None:
    """Export a chat session with its messages and analytics."""
    cfg = _setup(config)
    if fmt not in ("markdown", "json"):
        console.print("[red]--format must be markdown or json[/red]")
        raise typer.Exit(2)

    from chronos_rag.errors import SessionNotFound
    from chronos_rag.sessions.ledger import SessionLedger

    ledger = SessionLedger.load(Path(cfg.sessions.path))
    try:
        if fmt == "json":
            text = json.dumps(ledger.export_session(session_id), indent=2, ensure_ascii=False)
        else:
            text = ledger.export_session_markdown(session_id)
    except SessionNotFound:
        console.print(f"[red]Session not found: {session_id}[/red]")
        raise typer.Exit(1)

    if output:
        ensure_dirs(output.parent)
        output.write_text(text, encoding="utf-8")
        console.print(f"[green][OK] Exported {session_id} -> {output}[/green]")
    else:
        typer.echo(text)


if __name__ == "__main__":
    app()
