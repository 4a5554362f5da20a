"""Tier 1: cheap gate in front of the model stage.

combined = relevance * 0.3 + delta * 0.4 + urgency * 0.3

Escalation to Tier 2 happens when the combined score reaches the threshold,
or when one of the override conditions holds (Tier 0 already escalated,
critical severity, high urgency with real change, several missed items).
Given identical inputs and baseline the result is identical.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from .assessment import QuickAssessmentResult, RelevantContextItem, RuleEvaluationResult
from .models import Severity, SignalEntry, SignalPriority, StateSnapshot
from .retrieval import RagRetriever
from .state_delta import StateDeltaCalculator, StateDeltaSummary

logger = logging.getLogger(__name__)

RELEVANCE_WEIGHT = 0.3
DELTA_WEIGHT = 0.4
URGENCY_WEIGHT = 0.3
DEFAULT_ESCALATION_THRESHOLD = 0.5

MAX_CONTEXT_ITEMS = 10

_SEVERITY_URGENCY = {
    Severity.CRITICAL: 0.4,
    Severity.HIGH: 0.3,
    Severity.MEDIUM: 0.15,
    Severity.LOW: 0.05,
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def combined_score(relevance: float, delta: float, urgency: float) -> float:
    return round(
        relevance * RELEVANCE_WEIGHT + delta * DELTA_WEIGHT + urgency * URGENCY_WEIGHT, 4
    )


def urgency_score(signals: Sequence[SignalEntry], tier0: RuleEvaluationResult) -> float:
    urgent = sum(1 for s in signals if s.priority == SignalPriority.URGENT)
    aligned = sum(1 for s in signals if s.priority == SignalPriority.WINDOW_ALIGNED)
    score = min(urgent * 0.2, 0.4) + min(aligned * 0.05, 0.1)
    if tier0.max_severity is not None:
        score += _SEVERITY_URGENCY[tier0.max_severity]
    score += min(len(tier0.triggered_rules) * 0.05, 0.2)
    return round(min(score, 1.0), 4)


def relevance_score(items: Sequence[RelevantContextItem]) -> float:
    """Position-weighted mean similarity plus a small boost for volume."""
    if not items:
        return 0.0
    weighted = 0.0
    total_weight = 0.0
    for i, item in enumerate(items):
        weight = 1.0 / (i + 1)
        weighted += item.similarity * weight
        total_weight += weight
    boost = min(len(items) / 10, 0.2)
    return round(min(weighted / total_weight + boost, 1.0), 4)


def humanize_event_type(event_type: str) -> str:
    """``CheckInSubmittedEvent`` -> ``check in submitted event``."""
    return _CAMEL_BOUNDARY.sub(" ", event_type).lower()


def build_search_query(signals: Sequence[SignalEntry], tier0: RuleEvaluationResult) -> str:
    parts: list[str] = []
    seen: set[str] = set()
    for signal in signals:
        if signal.event_type not in seen:
            seen.add(signal.event_type)
            parts.append(humanize_event_type(signal.event_type))
        if len(seen) >= 5:
            break
    parts.extend(r.rule_name for r in tier0.triggered_rules[:3])
    parts.extend(
        c.target_entity_title for c in tier0.direct_recommendations[:3] if c.target_entity_title
    )
    return " ".join(parts).strip()


def decide_tier2(
    combined: float,
    threshold: float,
    tier0: RuleEvaluationResult,
    delta: StateDeltaSummary,
    urgency: float,
) -> tuple[bool, str | None]:
    if combined >= threshold:
        return True, f"Combined score {combined:.2f} exceeds threshold {threshold:.2f}"
    if tier0.should_escalate_to_tier1:
        return True, tier0.escalation_reason or "Tier 0 requested escalation"
    if tier0.max_severity == Severity.CRITICAL:
        return True, "Critical severity issue detected"
    if urgency > 0.7 and delta.score > 0.3:
        return True, "High urgency with significant state changes"
    if delta.missed_items >= 3:
        return True, f"{delta.missed_items} missed items detected"
    return False, None


class QuickAssessor:
    def __init__(
        self,
        delta_calculator: StateDeltaCalculator,
        retriever: RagRetriever | None = None,
        *,
        escalation_threshold: float = DEFAULT_ESCALATION_THRESHOLD,
    ) -> None:
        self.delta_calculator = delta_calculator
        self.retriever = retriever
        self.escalation_threshold = escalation_threshold

    async def assess(
        self,
        state: StateSnapshot,
        signals: Sequence[SignalEntry],
        tier0: RuleEvaluationResult,
    ) -> QuickAssessmentResult:
        delta = await self.delta_calculator.calculate(state.user_id, state, signals)
        urgency = urgency_score(signals, tier0)
        context = await self._find_relevant_context(state.user_id, signals, tier0)
        relevance = relevance_score(context)
        combined = combined_score(relevance, delta.score, urgency)
        escalate, reason = decide_tier2(combined, self.escalation_threshold, tier0, delta, urgency)

        logger.info(
            "Tier 1 for user %s: relevance=%.2f delta=%.2f urgency=%.2f combined=%.2f escalate=%s",
            state.user_id,
            relevance,
            delta.score,
            urgency,
            combined,
            escalate,
            extra={"mastery_user_id": state.user_id, "mastery_tier": "tier1"},
        )
        return QuickAssessmentResult(
            combined_score=combined,
            should_escalate_to_tier2=escalate,
            escalation_reason=reason,
            relevance_score=relevance,
            delta_score=delta.score,
            urgency_score=urgency,
            missed_items=delta.missed_items,
            relevant_context=context,
        )

    async def _find_relevant_context(
        self,
        user_id: str,
        signals: Sequence[SignalEntry],
        tier0: RuleEvaluationResult,
    ) -> tuple[RelevantContextItem, ...]:
        if self.retriever is None:
            return ()
        query = build_search_query(signals, tier0)
        if not query:
            return ()
        rag = await self.retriever.retrieve(user_id, query, "tier1", MAX_CONTEXT_ITEMS)
        return rag.items if rag is not None else ()
