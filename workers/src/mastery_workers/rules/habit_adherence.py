"""Habit adherence threshold: active habits below 50% over the last 7 days."""

from __future__ import annotations

from collections.abc import Sequence

from ..assessment import DirectRecommendationCandidate
from ..models import (
    ActionKind,
    HabitMode,
    HabitSnapshot,
    HabitStatus,
    RecommendationContext,
    RecommendationType,
    Severity,
    SignalEntry,
    StateSnapshot,
    TargetKind,
)
from .base import Rule, RuleOutcome

WARNING_THRESHOLD = 0.50
CRITICAL_THRESHOLD = 0.25
LONG_STREAK = 14
MEDIUM_STREAK = 7
SYSTEMIC_FRACTION = 0.50

_MODE_BONUS = {
    HabitMode.FULL: 0.00,
    HabitMode.MAINTENANCE: 0.05,
    HabitMode.MINIMUM: 0.10,
}

_NEXT_MODE_DOWN = {
    HabitMode.FULL: HabitMode.MINIMUM,
    HabitMode.MAINTENANCE: HabitMode.MINIMUM,
}


def adherence_severity(
    adherence: float,
    streak: int,
    mode: HabitMode,
    linked_to_high_priority_goal: bool,
) -> Severity:
    """Severity from adherence band and streak, then boosted.

    Long streaks at risk weigh more. A habit already at minimum mode cannot
    be scaled down further, and P1/P2 goal linkage raises the stakes; both
    lift the result to at least high.
    """
    if adherence <= CRITICAL_THRESHOLD:
        severity = Severity.CRITICAL if streak >= LONG_STREAK else Severity.HIGH
    elif adherence <= WARNING_THRESHOLD and streak >= LONG_STREAK:
        severity = Severity.HIGH
    elif adherence <= WARNING_THRESHOLD and streak >= MEDIUM_STREAK:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW

    if mode == HabitMode.MINIMUM or linked_to_high_priority_goal:
        severity = severity.at_least(Severity.HIGH)
    return severity


def _pct(value: float) -> float:
    return round(value * 100, 1)


class HabitAdherenceThresholdRule(Rule):
    rule_id = "HABIT_ADHERENCE_THRESHOLD"
    name = "Habit Adherence Threshold"
    description = "Detects habits with adherence dropping below 50% over the past 7 days."

    def evaluate(self, state: StateSnapshot, signals: Sequence[SignalEntry]) -> RuleOutcome:
        active = [h for h in state.habits if h.status == HabitStatus.ACTIVE]
        struggling = sorted(
            (h for h in active if h.adherence_7day < WARNING_THRESHOLD),
            key=lambda h: (h.adherence_7day, h.id),
        )
        if not struggling:
            return self.not_triggered()

        worst = struggling[0]
        linked = any(g.priority <= 2 for g in state.goals if g.id in worst.goal_ids)
        severity = adherence_severity(worst.adherence_7day, worst.current_streak, worst.current_mode, linked)

        fraction = len(struggling) / len(active)
        score = round(min(0.85 + _MODE_BONUS.get(worst.current_mode, 0.0), 0.95), 4)

        evidence = {
            "struggling_habit_count": len(struggling),
            "total_active_habits": len(active),
            "percentage_struggling_habits": _pct(fraction),
            "worst_adherence_pct": _pct(worst.adherence_7day),
            "worst_habit_id": worst.id,
            "worst_habit_title": worst.title,
            "worst_habit_mode": worst.current_mode.value,
            "worst_habit_streak": worst.current_streak,
            "linked_to_high_priority_goal": linked,
            "all_struggling_habits": [
                {
                    "id": h.id,
                    "title": h.title,
                    "adherence_pct": _pct(h.adherence_7day),
                    "mode": h.current_mode.value,
                    "streak": h.current_streak,
                }
                for h in struggling
            ],
        }

        recommendation = self._recommend(worst, score)
        return self.triggered(
            severity,
            evidence,
            recommendation,
            requires_escalation=fraction > SYSTEMIC_FRACTION,
        )

    def _recommend(self, habit: HabitSnapshot, score: float) -> DirectRecommendationCandidate:
        pct = round(habit.adherence_7day * 100)
        at_minimum = habit.current_mode == HabitMode.MINIMUM

        if at_minimum:
            title = f'"{habit.title}" needs attention ({pct}% this week)'
            rationale = (
                "Even at minimum mode, you're struggling with this habit. Consider if it's the "
                "right time for this habit, or if there's an obstacle to address."
            )
            payload = None
        else:
            title = f'Consider scaling down "{habit.title}" ({pct}% adherence)'
            rationale = (
                f'Your adherence to "{habit.title}" has dropped to {pct}%. Switching to minimum '
                "mode might help you maintain consistency while you rebuild momentum."
            )
            payload = {
                "habitId": habit.id,
                "defaultMode": _NEXT_MODE_DOWN[habit.current_mode].value,
            }

        return DirectRecommendationCandidate(
            type=RecommendationType.HABIT_MODE_SUGGESTION,
            context=RecommendationContext.DRIFT_ALERT,
            target_kind=TargetKind.HABIT,
            target_entity_id=habit.id,
            target_entity_title=habit.title,
            action_kind=ActionKind.REFLECT_PROMPT if at_minimum else ActionKind.UPDATE,
            title=title,
            rationale=rationale,
            score=score,
            action_payload=payload,
            action_summary="Reflect on blockers" if at_minimum else "Scale to minimum mode",
        )
