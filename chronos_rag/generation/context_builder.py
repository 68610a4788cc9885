"""
Context Builder
----------------
Turns ranked search results into a token-budgeted context block for the
text generator, plus the citation records shown next to the answer.

Formats:
  markdown -- "### Source N: Title @ m:ss" headings (default)
  xml      -- <source id="N" video="..." timestamp="..."> elements
  plain    -- "[Source N: Title @ m:ss]" lines

Token counts are a heuristic (ceil(chars / 3.5)), conservative enough for
transcripts with code and punctuation.  Chunks are added in rank order
until the next one would exceed the budget; nothing after that point is
considered, so the context always holds a rank-order prefix.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Literal, Optional, Sequence

from loguru import logger

from chronos_rag.generation.prompts import (
    CONTEXT_FOOTERS,
    CONTEXT_HEADERS,
    HISTORY_FOOTER,
    HISTORY_HEADER,
    HISTORY_TURN,
    NO_CONTEXT_SENTINEL,
    SYSTEM_PROMPT,
)
from chronos_rag.schemas import (
    Citation,
    ConversationTurn,
    FormattedContext,
    RankedResult,
    SourceAttribution,
    TimestampRange,
)
from chronos_rag.utils.helpers import (
    format_timestamp,
    normalise_text,
    truncate_text,
    url_with_timestamp,
)

ContextFormat = Literal["markdown", "xml", "plain"]

CHARS_PER_TOKEN = 3.5
FINGERPRINT_CHARS = 100
DEFAULT_MAX_TOKENS = 8000


@dataclass
class ContextOptions:
    max_tokens: int = DEFAULT_MAX_TOKENS
    format: ContextFormat = "markdown"
    include_timestamps: bool = True
    include_source_titles: bool = True
    show_rank_scores: bool = False
    deduplicate_content: bool = False

    def __post_init__(self) -> None:
        if self.format not in CONTEXT_HEADERS:
            raise ValueError(f"Unknown context format: {self.format!r}")


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _source_url(result: RankedResult) -> Optional[str]:
    return result.source_url or result.metadata.get("video_url")


def _deduplicate_content(results: Sequence[RankedResult]) -> list[RankedResult]:
    """Drop results whose normalised first 100 characters were already seen."""
    seen: set[str] = set()
    unique: list[RankedResult] = []
    for r in results:
        fingerprint = normalise_text(r.text)[:FINGERPRINT_CHARS]
        if fingerprint not in seen:
            seen.add(fingerprint)
            unique.append(r)
    return unique


def _format_chunk(result: RankedResult, number: int, options: ContextOptions) -> str:
    title = (
        result.display_title
        if options.include_source_titles
        else f"Video {result.source_id[:8]}"
    )
    timestamp = format_timestamp(result.start_seconds) if options.include_timestamps else None
    rank = f"{result.rank_score:.3f}" if options.show_rank_scores else None

    if options.format == "xml":
        attrs = f'id="{number}" video="{title}"'
        if timestamp:
            attrs += f' timestamp="{timestamp}"'
        if rank:
            attrs += f' rank="{rank}"'
        return f"<source {attrs}>\n{result.text}\n</source>\n"

    label = f"Source {number}: {title}"
    if timestamp:
        label += f" @ {timestamp}"
    if rank:
        label += f" (rank: {rank})"

    if options.format == "plain":
        return f"[{label}]\n{result.text}\n\n"
    return f"### {label}\n\n{result.text}\n"


# --- Context assembly ---------------------------------------------------------

def build_context(
    results: Sequence[RankedResult],
    options: ContextOptions | None = None,
) -> FormattedContext:
    """
    Assemble a context block from ranked results within options.max_tokens.

    Returns:
        FormattedContext with the text, per-source attribution, the number
        of chunks included, the estimated token count and whether any
        result was dropped for budget reasons.
    """
    options = options or ContextOptions()

    if not results:
        return FormattedContext(context=NO_CONTEXT_SENTINEL)

    chunks = _deduplicate_content(results) if options.deduplicate_content else list(results)

    header = CONTEXT_HEADERS[options.format]
    footer = CONTEXT_FOOTERS[options.format]
    parts: list[str] = [header]
    # Parts after the header are joined with "\n"; the footer is reserved up front
    total_tokens = estimate_tokens(header) + (estimate_tokens("\n" + footer) if footer else 0)
    truncated = False
    included = 0
    sources: dict[str, SourceAttribution] = {}

    for i, result in enumerate(chunks):
        formatted = _format_chunk(result, i + 1, options)
        cost = estimate_tokens("\n" + formatted)

        if total_tokens + cost > options.max_tokens:
            truncated = True
            logger.warning(
                f"[Context] Truncated at chunk {i + 1}/{len(chunks)} "
                f"({len(chunks) - i} dropped, token limit: {options.max_tokens})"
            )
            break

        parts.append(formatted)
        total_tokens += cost
        included += 1

        attribution = sources.get(result.source_id)
        if attribution is None:
            attribution = SourceAttribution(
                source_id=result.source_id,
                source_title=result.display_title,
                source_url=_source_url(result),
            )
            sources[result.source_id] = attribution
        attribution.chunks_used += 1
        attribution.timestamps.append(
            TimestampRange(
                start=result.start_seconds,
                end=result.end_seconds,
                chunk_id=result.chunk_id,
            )
        )

    if footer:
        parts.append(footer)
    text = "\n".join(parts)
    total_tokens = estimate_tokens(text)

    logger.debug(
        f"[Context] {included} chunks | {len(sources)} sources | "
        f"~{total_tokens} tokens | format={options.format}"
    )
    return FormattedContext(
        context=text,
        sources=list(sources.values()),
        total_chunks=included,
        total_tokens=total_tokens,
        truncated=truncated,
    )


# --- Citations ----------------------------------------------------------------

def build_citation(result: RankedResult, include_url: bool = False) -> str:
    """Inline citation 'Title @ m:ss', optionally as a timestamped markdown link."""
    label = f"{result.display_title} @ {format_timestamp(result.start_seconds)}"
    url = _source_url(result)
    if include_url and url:
        return f"[{label}]({url_with_timestamp(url, result.start_seconds)})"
    return label


def extract_citations(
    results: Sequence[RankedResult],
    preview_chars: int = 200,
) -> list[Citation]:
    return [
        Citation(
            index=i,
            source_id=r.source_id,
            source_title=r.display_title,
            source_url=_source_url(r),
            timestamp=r.start_seconds,
            timestamp_formatted=format_timestamp(r.start_seconds),
            preview=truncate_text(r.text, preview_chars),
            relevance_score=r.rank_score,
        )
        for i, r in enumerate(results, start=1)
    ]


# --- Prompts ------------------------------------------------------------------

def build_system_prompt(
    context: FormattedContext | str,
    custom_instructions: str | None = None,
) -> str:
    context_text = context.context if isinstance(context, FormattedContext) else context
    return SYSTEM_PROMPT.format(
        custom_instructions=custom_instructions or "",
        context=context_text,
    )


def build_conversation_prompt(
    history: Sequence[ConversationTurn],
    context: FormattedContext,
    max_history: int = 5,
) -> str:
    """
    Recent turns (oldest first, at most max_history) followed by the
    freshly built context.  With no history the context is returned as is.
    """
    recent = list(history)[-max_history:] if max_history > 0 else []
    if not recent:
        return context.context

    turns = "\n\n".join(HISTORY_TURN.format(role=t.role, content=t.content) for t in recent)
    return f"{HISTORY_HEADER}{turns}{HISTORY_FOOTER}{context.context}"


# --- Presets & stats ----------------------------------------------------------

_USE_CASE_PRESETS: dict[str, dict] = {
    "quick-answer": {
        "max_tokens": 4000,
        "format": "plain",
        "include_timestamps": False,
        "deduplicate_content": True,
    },
    "detailed-explanation": {
        "max_tokens": 12000,
        "format": "markdown",
        "include_timestamps": True,
        "deduplicate_content": False,
    },
    "troubleshooting": {
        "max_tokens": 8000,
        "format": "markdown",
        "include_timestamps": True,
        "show_rank_scores": True,
        "deduplicate_content": False,
    },
}


def options_for_use_case(use_case: str) -> ContextOptions:
    """Preset ContextOptions; unknown use cases get the defaults."""
    return ContextOptions(**_USE_CASE_PRESETS.get(use_case, {}))


def context_stats(context: FormattedContext, max_tokens: int = DEFAULT_MAX_TOKENS) -> dict:
    avg = context.total_tokens / context.total_chunks if context.total_chunks else 0.0
    return {
        "average_tokens_per_chunk": round(avg, 1),
        "unique_sources": len({s.source_id for s in context.sources}),
        "token_utilization": round(context.total_tokens / max_tokens * 100, 1) if max_tokens else 0.0,
        "truncated": context.truncated,
    }
