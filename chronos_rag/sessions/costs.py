"""
Chat cost accounting.

Rates are USD per million tokens.  Every chat answer costs one query
embedding (estimated at 50 tokens) plus the completion's input/output.
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Sequence

# ---------------------------------------------------------------------------
# Model pricing tables  (input_$/M, output_$/M)
# ---------------------------------------------------------------------------

_MODEL_PRICING: dict[str, tuple[float, float]] = {
    "claude-haiku-4-5-20251001": (0.800,  4.000),
    "claude-sonnet-4-6":         (3.000, 15.000),
}

_HAIKU_FALLBACK = _MODEL_PRICING["claude-haiku-4-5-20251001"]
_SONNET_FALLBACK = _MODEL_PRICING["claude-sonnet-4-6"]

_EMBEDDING_PRICING: dict[str, float] = {
    "text-embedding-3-small": 0.020,
    "text-embedding-3-large": 0.130,
    "text-embedding-ada-002": 0.100,
}

DEFAULT_CHAT_MODEL = "claude-haiku-4-5-20251001"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
TOKENS_PER_EMBEDDING_QUERY = 50


def chat_rates(model: str) -> tuple[float, float]:
    """Known models use their own rates; unknown ids fall back by family."""
    if model in _MODEL_PRICING:
        return _MODEL_PRICING[model]
    return _SONNET_FALLBACK if "sonnet" in model.lower() else _HAIKU_FALLBACK


@dataclass
class CostBreakdown:
    input_tokens: int = 0
    output_tokens: int = 0
    embedding_queries: int = 0
    input_cost: float = 0.0
    output_cost: float = 0.0
    embedding_cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost + self.embedding_cost

    def to_dict(self) -> dict:
        return {**asdict(self), "total_tokens": self.total_tokens, "total_cost": self.total_cost}


def calculate_chat_cost(
    input_tokens: int,
    output_tokens: int,
    model: str = DEFAULT_CHAT_MODEL,
) -> CostBreakdown:
    input_rate, output_rate = chat_rates(model)
    return CostBreakdown(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        input_cost=input_tokens * input_rate / 1_000_000,
        output_cost=output_tokens * output_rate / 1_000_000,
    )


def embedding_rate(model: str) -> float:
    return _EMBEDDING_PRICING.get(model, _EMBEDDING_PRICING[DEFAULT_EMBEDDING_MODEL])


def calculate_embedding_cost(query_count: int, model: str = DEFAULT_EMBEDDING_MODEL) -> float:
    return query_count * TOKENS_PER_EMBEDDING_QUERY * embedding_rate(model) / 1_000_000


def calculate_complete_cost(
    input_tokens: int = 0,
    output_tokens: int = 0,
    model: str = DEFAULT_CHAT_MODEL,
    embedding_queries: int = 1,
    embedding_model: str = DEFAULT_EMBEDDING_MODEL,
) -> CostBreakdown:
    """Chat cost plus the query embeddings that produced its context."""
    breakdown = calculate_chat_cost(input_tokens, output_tokens, model)
    breakdown.embedding_queries = embedding_queries
    breakdown.embedding_cost = calculate_embedding_cost(embedding_queries, embedding_model)
    return breakdown


def estimate_session_cost(
    message_count: int,
    avg_input: int = 500,
    avg_output: int = 800,
    model: str = DEFAULT_CHAT_MODEL,
) -> CostBreakdown:
    """Estimate from a message count; half the messages (rounded up) are user turns."""
    user_messages = math.ceil(message_count / 2)
    return calculate_complete_cost(
        input_tokens=user_messages * avg_input,
        output_tokens=user_messages * avg_output,
        model=model,
        embedding_queries=user_messages,
    )


def project_monthly_cost(
    daily_costs: Sequence[float],
    total_messages: int,
    total_sessions: int,
) -> dict:
    days = len(daily_costs)
    total = sum(daily_costs)
    avg_daily = total / days if days else 0.0
    return {
        "current_daily_cost": avg_daily,
        "projected_monthly_cost": avg_daily * 30,
        "days_analyzed": days,
        "total_messages": total_messages,
        "total_sessions": total_sessions,
        "avg_cost_per_message": total / total_messages if total_messages > 0 else 0.0,
        "avg_cost_per_session": total / total_sessions if total_sessions > 0 else 0.0,
    }


def format_cost(cost: float) -> str:
    """Dollars with 4 decimals; sub-cent amounts are shown in cents."""
    if cost < 0.01:
        return f"{cost * 100:.4f}¢"
    return f"${cost:.4f}"


# ---------------------------------------------------------------------------
# Optimisation hints
# ---------------------------------------------------------------------------

_PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}

# Per-token output rate above which a model is treated as Sonnet-class
_PREMIUM_OUTPUT_RATE = 1e-5


@dataclass
class CostSuggestion:
    kind: str
    priority: str
    title: str
    description: str
    potential_savings_percent: int


def cost_optimization_suggestions(breakdown: CostBreakdown, message_count: int) -> list[CostSuggestion]:
    """Rule-based savings hints for a usage breakdown, high priority first."""
    suggestions: list[CostSuggestion] = []

    if breakdown.output_tokens > breakdown.input_tokens * 2:
        suggestions.append(CostSuggestion(
            "prompt", "high", "Reduce response verbosity",
            "Output tokens are 2x input tokens. Ask for more concise answers in the system prompt.",
            25,
        ))

    output_rate = breakdown.output_cost / breakdown.output_tokens if breakdown.output_tokens else 0.0
    if output_rate > _PREMIUM_OUTPUT_RATE and message_count < 100:
        suggestions.append(CostSuggestion(
            "model", "high", "Switch to Claude Haiku for simple queries",
            "Haiku is several times cheaper and answers most course questions well. "
            "Keep Sonnet for complex reasoning.",
            67,
        ))

    if breakdown.input_tokens > 5000:
        suggestions.append(CostSuggestion(
            "caching", "medium", "Enable prompt caching",
            "Cache the system prompt and transcript chunks to cut repeated input-token costs.",
            50,
        ))

    if breakdown.embedding_queries > 3:
        suggestions.append(CostSuggestion(
            "embedding", "medium", "Reuse search results",
            "Repeated questions re-embed the query. Keep the search cache on and raise its TTL.",
            30,
        ))

    if message_count > 50:
        suggestions.append(CostSuggestion(
            "batching", "low", "Summarise long sessions",
            "Compress older turns into a summary to keep the history block small.",
            20,
        ))

    return sorted(suggestions, key=lambda s: _PRIORITY_ORDER[s.priority])


# ---------------------------------------------------------------------------
# Per-student summary
# ---------------------------------------------------------------------------

@dataclass
class StudentCostSummary:
    student_id: str
    total_messages: int
    total_sessions: int
    total_tokens: int
    total_cost: float
    avg_cost_per_message: float
    avg_cost_per_session: float
    period_days: int
    daily_avg_cost: float


def calculate_student_cost(sessions: Sequence, student_id: str, period_days: int) -> StudentCostSummary:
    """
    Aggregate per-session totals for one student.

    `sessions` holds objects with message_count, total_tokens and
    total_cost attributes (SessionAnalytics qualifies).
    """
    total_messages = sum(s.message_count for s in sessions)
    total_cost = sum(s.total_cost for s in sessions)
    return StudentCostSummary(
        student_id=student_id,
        total_messages=total_messages,
        total_sessions=len(sessions),
        total_tokens=sum(s.total_tokens for s in sessions),
        total_cost=total_cost,
        avg_cost_per_message=total_cost / total_messages if total_messages > 0 else 0.0,
        avg_cost_per_session=total_cost / len(sessions) if sessions else 0.0,
        period_days=period_days,
        daily_avg_cost=total_cost / period_days if period_days > 0 else 0.0,
    )
