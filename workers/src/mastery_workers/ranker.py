"""Dedup and ordering for the early-exit paths (Tier 0 / Tier 1 stop)."""

from __future__ import annotations

from collections.abc import Sequence

from .assessment import DirectRecommendationCandidate
from .models import StateSnapshot


def _tie_break(candidate: DirectRecommendationCandidate) -> tuple[str, str, str, str]:
    return (
        candidate.target_kind.value,
        candidate.target_entity_id or "",
        candidate.action_kind.value,
        candidate.title,
    )


def rank(
    candidates: Sequence[DirectRecommendationCandidate],
    state: StateSnapshot | None = None,
    max_results: int = 5,
) -> list[DirectRecommendationCandidate]:
    """One candidate per (target_kind, target_entity_id), best score first.

    The highest-scoring candidate wins its group; on equal scores the first
    one seen is kept. ``state`` is accepted for ranking strategies that
    need it and is unused here.
    """
    if max_results <= 0:
        return []

    best: dict[tuple, DirectRecommendationCandidate] = {}
    for candidate in candidates:
        current = best.get(candidate.target_key)
        if current is None or candidate.score > current.score:
            best[candidate.target_key] = candidate

    ordered = sorted(best.values(), key=lambda c: (-c.score, _tie_break(c)))
    return ordered[:max_results]
