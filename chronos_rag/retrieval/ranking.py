"""
Ranking Engine
---------------
Re-orders similarity candidates by a weighted blend of four signals:

  similarity  -- cosine similarity from the vector store          (0.60)
  recency     -- exp(-age_days / 90) of the parent source         (0.15)
  popularity  -- 30-day views / interactions / completion blend   (0.15)
  affinity    -- exp(-age_days / 7) decay of a student's own
                 interactions with the source, last 10, / 5       (0.10)

Each signal lies in [0, 1].  Lookups are made once per distinct source.
A failing lookup never fails the ranking: the signal scores 0, a warning
is logged and the component is listed in rank_breakdown.degraded.

After sorting, near-duplicate chunks of the same source are collapsed so
the context is not filled with overlapping transcript windows.
"""
from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, NamedTuple, Optional, Sequence

import numpy as np
from loguru import logger

from chronos_rag.retrieval.lookups import InteractionStore, SourceCatalog, UsageStore
from chronos_rag.schemas import RankBreakdown, RankedResult, SearchCandidate, UsageRecord
from chronos_rag.utils.helpers import age_days, utcnow

RECENCY_HALF_SCALE_DAYS = 90.0
POPULARITY_WINDOW_DAYS = 30
VIEWS_SATURATION = 1000
INTERACTIONS_SATURATION = 500
AFFINITY_DECAY_DAYS = 7.0
AFFINITY_HISTORY_LIMIT = 10
AFFINITY_SATURATION = 5.0


@dataclass
class RankingOptions:
    enable_recency_boost: bool = True
    enable_popularity_boost: bool = True
    affinity_subject_id: Optional[str] = None     # Student whose history drives affinity

    similarity_weight: float = 0.60
    recency_weight: float = 0.15
    popularity_weight: float = 0.15
    affinity_weight: float = 0.10

    deduplicate: bool = True
    deduplicate_similarity_threshold: float = 0.95

    @property
    def weight_sum(self) -> float:
        return (
            self.similarity_weight
            + self.recency_weight
            + self.popularity_weight
            + self.affinity_weight
        )


class SignalScore(NamedTuple):
    score: float
    degraded: bool = False


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


# --- Signal functions ---------------------------------------------------------

def recency_score(created_at: Optional[datetime], now: datetime) -> float:
    """exp(-age/90); an unknown creation time scores 0."""
    if created_at is None:
        return 0.0
    return _clamp(math.exp(-age_days(created_at, now) / RECENCY_HALF_SCALE_DAYS))


def popularity_score(records: Sequence[UsageRecord]) -> float:
    """
    Blend of trailing-window usage: 0.3 * views + 0.4 * interactions +
    0.3 * completion.  Views saturate at 1000, interactions at 500 and the
    completion rate is the mean daily percentage / 100.
    """
    if not records:
        return 0.0

    views = min(sum(r.views for r in records) / VIEWS_SATURATION, 1.0)
    interactions = min(sum(r.interactions for r in records) / INTERACTIONS_SATURATION, 1.0)
    completion = sum(r.completion_rate for r in records) / len(records) / 100

    return _clamp(0.3 * views + 0.4 * interactions + 0.3 * completion)


def affinity_score(timestamps: Sequence[datetime], now: datetime) -> float:
    """Sum of exp(-age/7) over the most recent interactions, scaled by 1/5."""
    if not timestamps:
        return 0.0
    recent = sorted(timestamps, reverse=True)[:AFFINITY_HISTORY_LIMIT]
    decayed = sum(math.exp(-age_days(ts, now) / AFFINITY_DECAY_DAYS) for ts in recent)
    return _clamp(decayed / AFFINITY_SATURATION)


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def _is_near_duplicate(later: SearchCandidate, kept: SearchCandidate, threshold: float) -> bool:
    if later.embedding is not None and kept.embedding is not None:
        return _cosine(later.embedding, kept.embedding) > threshold
    # No vectors to compare: fall back to the later chunk's own query similarity
    return later.similarity > threshold


# --- Engine -------------------------------------------------------------------

class RankingEngine:
    """
    Scores and orders candidates.

    Every collaborator is optional: without a catalog the candidates'
    denormalised source_created_at is used, without a usage store
    popularity is 0 and without an interaction store affinity is 0.
    """

    def __init__(
        self,
        catalog: SourceCatalog | None = None,
        usage: UsageStore | None = None,
        interactions: InteractionStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.catalog = catalog
        self.usage = usage
        self.interactions = interactions
        self.clock = clock

    def rank(
        self,
        candidates: Sequence[SearchCandidate],
        options: RankingOptions | None = None,
    ) -> list[RankedResult]:
        """
        Score every candidate, sort by rank_score descending (stable) and
        optionally collapse near-duplicates within a source.
        """
        if not candidates:
            return []

        options = options or RankingOptions()
        if not math.isclose(options.weight_sum, 1.0, abs_tol=1e-6):
            logger.debug(f"[Ranking] Weights sum to {options.weight_sum:.3f}, not 1.0")

        now = self.clock()
        source_ids = list(dict.fromkeys(c.source_id for c in candidates))

        recency: dict[str, SignalScore] = {}
        if options.enable_recency_boost:
            recency = self._recency_signals(source_ids, candidates, now)

        popularity: dict[str, SignalScore] = {}
        if options.enable_popularity_boost:
            popularity = {sid: self._popularity_signal(sid, now) for sid in source_ids}

        affinity: dict[str, SignalScore] = {}
        if options.affinity_subject_id:
            affinity = {
                sid: self._affinity_signal(options.affinity_subject_id, sid, now)
                for sid in source_ids
            }

        zero = SignalScore(0.0)
        ranked: list[RankedResult] = []
        for candidate in candidates:
            sid = candidate.source_id
            rec = recency.get(sid, zero)
            pop = popularity.get(sid, zero)
            aff = affinity.get(sid, zero)

            breakdown = RankBreakdown(
                similarity=candidate.similarity,
                recency=rec.score,
                popularity=pop.score,
                affinity=aff.score,
                degraded=[
                    name
                    for name, signal in (("recency", rec), ("popularity", pop), ("affinity", aff))
                    if signal.degraded
                ],
            )
            rank_score = (
                options.similarity_weight * candidate.similarity
                + options.recency_weight * rec.score
                + options.popularity_weight * pop.score
                + options.affinity_weight * aff.score
            )
            ranked.append(RankedResult.from_candidate(candidate, rank_score, breakdown))

        # sorted() is stable: equal scores keep arrival (similarity) order
        ranked = sorted(ranked, key=lambda r: r.rank_score, reverse=True)

        if options.deduplicate:
            before = len(ranked)
            ranked = self._deduplicate(ranked, options.deduplicate_similarity_threshold)
            if len(ranked) < before:
                logger.debug(f"[Ranking] Dropped {before - len(ranked)} near-duplicate chunks")

        logger.debug(
            f"[Ranking] Ranked {len(ranked)} results from {len(candidates)} candidates "
            f"across {len(source_ids)} sources"
        )
        return ranked

    # --- Lookups --------------------------------------------------------------

    def _recency_signals(
        self,
        source_ids: list[str],
        candidates: Sequence[SearchCandidate],
        now: datetime,
    ) -> dict[str, SignalScore]:
        denormalised: dict[str, Optional[datetime]] = {}
        for c in candidates:
            if denormalised.get(c.source_id) is None:
                denormalised[c.source_id] = c.source_created_at

        if self.catalog is None:
            created = denormalised
        else:
            try:
                looked_up = self.catalog.created_at(source_ids)
            except Exception as exc:
                logger.warning(f"[Ranking] Creation-time lookup failed: {exc}")
                return {sid: SignalScore(0.0, True) for sid in source_ids}
            # Sources the catalog does not know keep the timestamp carried on the chunk
            created = {sid: looked_up.get(sid) or denormalised.get(sid) for sid in source_ids}

        return {sid: SignalScore(recency_score(created.get(sid), now)) for sid in source_ids}

    def _popularity_signal(self, source_id: str, now: datetime) -> SignalScore:
        if self.usage is None:
            return SignalScore(0.0)
        since = (now - timedelta(days=POPULARITY_WINDOW_DAYS)).date()
        try:
            records = self.usage.usage_since(source_id, since)
        except Exception as exc:
            logger.warning(f"[Ranking] Usage lookup failed for {source_id}: {exc}")
            return SignalScore(0.0, True)
        return SignalScore(popularity_score(records))

    def _affinity_signal(self, subject_id: str, source_id: str, now: datetime) -> SignalScore:
        if self.interactions is None:
            return SignalScore(0.0)
        try:
            timestamps = self.interactions.recent_interactions(
                subject_id, source_id, limit=AFFINITY_HISTORY_LIMIT
            )
        except Exception as exc:
            logger.warning(
                f"[Ranking] Interaction lookup failed for {subject_id}/{source_id}: {exc}"
            )
            return SignalScore(0.0, True)
        return SignalScore(affinity_score(timestamps, now))

    # --- Deduplication --------------------------------------------------------

    @staticmethod
    def _deduplicate(ranked: list[RankedResult], threshold: float) -> list[RankedResult]:
        kept: list[RankedResult] = []
        kept_by_source: dict[str, list[RankedResult]] = defaultdict(list)

        for result in ranked:
            prior = kept_by_source[result.source_id]
            if any(_is_near_duplicate(result, k, threshold) for k in prior):
                continue
            prior.append(result)
            kept.append(result)

        return kept


# --- Post-filters -------------------------------------------------------------

def boost_source(
    results: Sequence[RankedResult],
    source_id: str,
    factor: float = 1.2,
) -> list[RankedResult]:
    """Multiply the score of one source's results and re-sort (follow-up questions)."""
    boosted = [
        r.model_copy(update={"rank_score": r.rank_score * factor}) if r.source_id == source_id else r
        for r in results
    ]
    return sorted(boosted, key=lambda r: r.rank_score, reverse=True)


def filter_by_rank_score(results: Sequence[RankedResult], min_score: float) -> list[RankedResult]:
    return [r for r in results if r.rank_score >= min_score]


def ensure_source_diversity(
    results: Sequence[RankedResult],
    max_per_source: int = 2,
) -> list[RankedResult]:
    """Keep at most max_per_source results per source, preserving order."""
    counts: dict[str, int] = defaultdict(int)
    diverse: list[RankedResult] = []
    for r in results:
        if counts[r.source_id] < max_per_source:
            diverse.append(r)
            counts[r.source_id] += 1
    return diverse
