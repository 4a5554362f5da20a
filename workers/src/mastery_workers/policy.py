"""Policy enforcement: hard constraints applied before persistence.

Policies run in ``order``. A ``rejected`` violation naming a recommendation
moves it out of the approved list; warnings and modifications are recorded
on the result only. The enforcer never adds recommendations, so its output
is always a partition of its input.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from .assessment import (
    PolicyEnforcementResult,
    PolicyViolation,
    Recommendation,
    RejectedRecommendation,
    ViolationSeverity,
)
from .models import ActionKind, RecommendationContext, StateSnapshot, TargetKind

logger = logging.getLogger(__name__)

DEFAULT_TASK_MINUTES = 30


class PolicyRule(Protocol):
    name: str
    order: int

    def evaluate(
        self,
        recommendations: Sequence[Recommendation],
        state: StateSnapshot,
        context: RecommendationContext,
    ) -> list[PolicyViolation]: ...


class ContentBoundaryPolicy:
    """Reject recommendations that mention a topic the user opted out of."""

    name = "ContentBoundary"
    order = 100

    def evaluate(
        self,
        recommendations: Sequence[Recommendation],
        state: StateSnapshot,
        context: RecommendationContext,
    ) -> list[PolicyViolation]:
        boundaries = [
            b.strip().lower() for b in state.profile.constraints.content_boundaries if b.strip()
        ]
        if not boundaries:
            return []

        violations: list[PolicyViolation] = []
        for rec in recommendations:
            text = " ".join(filter(None, (rec.title, rec.rationale, rec.action_summary))).lower()
            hit = next((b for b in boundaries if b in text), None)
            if hit is not None:
                violations.append(
                    PolicyViolation(
                        rule_name=self.name,
                        severity=ViolationSeverity.REJECTED,
                        message=f"Mentions content boundary '{hit}'",
                        recommendation_id=rec.id,
                    )
                )
        return violations


class CapacityBudgetPolicy:
    """Warn when the recommendations would overbook today."""

    name = "CapacityBudget"
    order = 200

    def evaluate(
        self,
        recommendations: Sequence[Recommendation],
        state: StateSnapshot,
        context: RecommendationContext,
    ) -> list[PolicyViolation]:
        constraints = state.profile.constraints
        weekend = state.today.weekday() >= 5
        max_minutes = (
            constraints.max_planned_minutes_weekend
            if weekend
            else constraints.max_planned_minutes_weekday
        )
        if max_minutes is None or max_minutes <= 0:
            return []

        planned = sum(
            t.est_minutes or DEFAULT_TASK_MINUTES
            for t in state.tasks
            if t.scheduled_date == state.today and t.is_open
        )
        added = sum(self._added_minutes(rec, state) for rec in recommendations)
        total = planned + added
        if total <= max_minutes:
            return []

        overage = total - max_minutes
        overage_pct = overage / max_minutes * 100
        logger.warning(
            "Capacity budget exceeded for user %s: %d min > %d min (%.0f%% over)",
            state.user_id,
            total,
            max_minutes,
            overage_pct,
        )
        return [
            PolicyViolation(
                rule_name=self.name,
                severity=ViolationSeverity.WARNING,
                message=(
                    f"Recommendations would exceed daily capacity by {overage_pct:.0f}% "
                    f"({overage} minutes)"
                ),
            )
        ]

    @staticmethod
    def _added_minutes(rec: Recommendation, state: StateSnapshot) -> int:
        if rec.target.kind != TargetKind.TASK:
            return 0
        if rec.action_kind not in (ActionKind.EXECUTE_TODAY, ActionKind.CREATE):
            return 0
        payload = rec.action_payload
        if not isinstance(payload, dict):
            return 0

        for key in ("estMinutes", "estimatedMinutes"):
            if key in payload:
                value = payload[key]
                # bool is an int subclass
                if isinstance(value, int) and not isinstance(value, bool) and value > 0:
                    return value
                return 0

        task_id = payload.get("taskId")
        task = state.task_by_id(task_id) if isinstance(task_id, str) else None
        if task is None or task.scheduled_date == state.today:
            return 0
        return task.est_minutes or DEFAULT_TASK_MINUTES


def default_policies() -> list[PolicyRule]:
    return [ContentBoundaryPolicy(), CapacityBudgetPolicy()]


class RecommendationPolicyEnforcer:
    def __init__(self, rules: Sequence[PolicyRule] | None = None) -> None:
        self.rules = sorted(
            default_policies() if rules is None else rules, key=lambda r: r.order
        )

    def enforce(
        self,
        recommendations: Sequence[Recommendation],
        state: StateSnapshot,
        context: RecommendationContext,
    ) -> PolicyEnforcementResult:
        approved = list(recommendations)
        rejected: list[RejectedRecommendation] = []
        violations: list[PolicyViolation] = []

        for rule in self.rules:
            if not approved:
                break
            try:
                found = rule.evaluate(tuple(approved), state, context)
            except Exception:
                logger.exception("Policy %s failed; skipping", rule.name)
                continue

            violations.extend(found)
            for violation in found:
                if violation.severity != ViolationSeverity.REJECTED:
                    continue
                index = next(
                    (i for i, r in enumerate(approved) if r.id == violation.recommendation_id),
                    None,
                )
                if index is None:
                    continue
                rec = approved.pop(index)
                rejected.append(RejectedRecommendation(rec, rule.name, violation.message))
                logger.info(
                    "Recommendation %s rejected by policy %s: %s",
                    rec.id,
                    rule.name,
                    violation.message,
                )

        logger.debug(
            "Policy enforcement for user %s: %d approved, %d rejected, %d violations",
            state.user_id,
            len(approved),
            len(rejected),
            len(violations),
        )
        return PolicyEnforcementResult(
            approved_recommendations=tuple(approved),
            rejected_recommendations=tuple(rejected),
            violations=tuple(violations),
        )
