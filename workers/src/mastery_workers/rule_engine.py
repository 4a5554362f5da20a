"""Tier 0: concurrent deterministic rule evaluation and the escalation gate.

Every enabled rule runs in its own worker thread inside one TaskGroup. The
whole fan-in is bounded by a single timeout; a rule still pending at the
deadline, a rule returning ``Err`` and a rule raising are all recorded as
not triggered with ``evidence["error"]`` so one bad rule never drops the
batch.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from .assessment import DirectRecommendationCandidate, RuleEvaluationResult, RuleResult
from .models import ActionKind, Severity, SignalEntry, StateSnapshot
from .rules.base import Err, Ok, Rule

logger = logging.getLogger(__name__)

HIGH_SEVERITY_ESCALATION_COUNT = 2
MANY_TRIGGERED_ESCALATION_COUNT = 4

_OPPOSED_ACTIONS = frozenset({ActionKind.EXECUTE_TODAY, ActionKind.DEFER})


class RuleEngine:
    def __init__(self, rules: Sequence[Rule], *, timeout_seconds: float = 10.0) -> None:
        ids = [r.rule_id for r in rules]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate rule ids: {ids}")
        self.rules = tuple(rules)
        self.timeout_seconds = timeout_seconds

    @property
    def enabled_rule_ids(self) -> list[str]:
        return [r.rule_id for r in self.rules if r.enabled]

    async def evaluate(
        self, state: StateSnapshot, signals: Sequence[SignalEntry]
    ) -> RuleEvaluationResult:
        enabled = [r for r in self.rules if r.enabled]
        slots: list[RuleResult | None] = [None] * len(enabled)

        logger.debug("Evaluating %d rules for user %s", len(enabled), state.user_id)
        try:
            async with asyncio.timeout(self.timeout_seconds):
                async with asyncio.TaskGroup() as tg:
                    for index, rule in enumerate(enabled):
                        tg.create_task(self._run_rule(index, rule, state, signals, slots))
        except TimeoutError:
            pending = [r.rule_id for r, s in zip(enabled, slots) if s is None]
            logger.warning(
                "Rule evaluation timed out after %.1fs for user %s; pending: %s",
                self.timeout_seconds,
                state.user_id,
                pending,
            )

        results = tuple(
            slot
            if slot is not None
            else RuleResult.not_triggered(rule.rule_id, rule.name, {"error": "timeout"})
            for rule, slot in zip(enabled, slots)
        )
        triggered = [r for r in results if r.triggered]
        direct = sorted(
            (
                (r.rule_id, r.direct_recommendation)
                for r in triggered
                if r.direct_recommendation is not None
            ),
            key=lambda pair: (-pair[1].score, pair[0]),
        )
        recommendations = tuple(c for _, c in direct)
        should_escalate, reason = decide_escalation(triggered, recommendations)

        logger.info(
            "Tier 0 complete for user %s: %d/%d rules triggered, escalate=%s",
            state.user_id,
            len(triggered),
            len(results),
            should_escalate,
            extra={"mastery_user_id": state.user_id, "mastery_tier": "tier0"},
        )
        return RuleEvaluationResult(
            all_results=results,
            direct_recommendations=recommendations,
            should_escalate_to_tier1=should_escalate,
            escalation_reason=reason,
        )

    @staticmethod
    async def _run_rule(
        index: int,
        rule: Rule,
        state: StateSnapshot,
        signals: Sequence[SignalEntry],
        slots: list[RuleResult | None],
    ) -> None:
        try:
            outcome = await asyncio.to_thread(rule.evaluate, state, signals)
        except Exception as exc:
            logger.warning(
                "Rule %s raised for user %s: %s", rule.rule_id, state.user_id, exc, exc_info=True
            )
            outcome = Err(f"{type(exc).__name__}: {exc}")

        match outcome:
            case Ok(value=result):
                slots[index] = result
            case Err(reason=reason):
                logger.warning("Rule %s returned error: %s", rule.rule_id, reason)
                slots[index] = RuleResult.not_triggered(rule.rule_id, rule.name, {"error": reason})


def find_conflict(candidates: Sequence[DirectRecommendationCandidate]) -> str | None:
    """Describe the first conflict among candidates, or None."""
    actions_by_target: dict[tuple, set[ActionKind]] = {}
    for candidate in candidates:
        actions_by_target.setdefault(candidate.target_key, set()).add(candidate.action_kind)
    for (kind, entity_id), actions in actions_by_target.items():
        if len(actions) > 1:
            return f"Conflicting actions for {kind.value} {entity_id or '(profile)'}"

    if _OPPOSED_ACTIONS <= {c.action_kind for c in candidates}:
        return "Conflicting recommendations: execute_today and defer"
    return None


def decide_escalation(
    triggered: Sequence[RuleResult],
    candidates: Sequence[DirectRecommendationCandidate],
) -> tuple[bool, str | None]:
    """First matching escalation condition wins."""
    if not triggered:
        return False, None

    for result in triggered:
        if result.requires_escalation:
            return True, f"Rule {result.rule_id} requires deeper assessment"

    high = sum(1 for r in triggered if r.severity.rank >= Severity.HIGH.rank)
    if high >= HIGH_SEVERITY_ESCALATION_COUNT:
        return True, f"Multiple high-severity issues detected ({high})"

    conflict = find_conflict(candidates)
    if conflict is not None:
        return True, conflict

    if len(triggered) >= MANY_TRIGGERED_ESCALATION_COUNT:
        return True, f"Many issues detected ({len(triggered)})"

    if candidates:
        return False, "Direct recommendations sufficient"
    return False, None
