"""Missing check-in detection, driven by explicit window-start signals."""

from __future__ import annotations

from collections.abc import Sequence

from ..assessment import DirectRecommendationCandidate
from ..models import (
    ActionKind,
    CheckInType,
    RecommendationContext,
    RecommendationType,
    Severity,
    SignalEntry,
    StateSnapshot,
    TargetKind,
)
from .base import Rule, RuleOutcome, find_signal

MORNING_WINDOW_START = "MorningWindowStart"
EVENING_WINDOW_START = "EveningWindowStart"


def streak_severity(streak: int) -> Severity:
    if streak >= 30:
        return Severity.CRITICAL
    if streak >= 14:
        return Severity.HIGH
    if streak >= 7:
        return Severity.MEDIUM
    return Severity.LOW


def streak_score(streak: int) -> float:
    # 0 days -> 0.50, 14 days -> 0.71, 27+ days -> 0.90
    return round(min(0.50 + streak * 0.015, 0.90), 4)


class CheckInMissingRule(Rule):
    rule_id = "CHECKIN_MISSING"
    name = "Missing Check-In Detection"
    description = "Detects when morning or evening check-ins are missing and overdue."

    def evaluate(self, state: StateSnapshot, signals: Sequence[SignalEntry]) -> RuleOutcome:
        reminder = find_signal(signals, MORNING_WINDOW_START, EVENING_WINDOW_START)
        if reminder is None:
            return self.not_triggered()

        today_types = {c.type for c in state.recent_check_ins if c.date == state.today}
        has_morning = CheckInType.MORNING in today_types
        has_evening = CheckInType.EVENING in today_types

        expected = (
            CheckInType.MORNING if reminder.event_type == MORNING_WINDOW_START else CheckInType.EVENING
        )
        if expected in today_types:
            return self.not_triggered()

        streak = state.check_in_streak
        label = expected.value
        evidence = {
            "expected_check_in_type": label,
            "current_streak": streak,
            "has_morning_check_in": has_morning,
            "has_evening_check_in": has_evening,
            "signal_type": reminder.event_type,
            "signal_scheduled_at": (
                reminder.scheduled_window_start.isoformat()
                if reminder.scheduled_window_start
                else None
            ),
        }

        if streak > 0:
            title = f"Don't break your {streak}-day check-in streak"
            rationale = (
                f"You've checked in consistently for {streak} days. A quick {label} "
                "check-in keeps your streak alive and helps you stay on track."
            )
        else:
            title = f"Time for your {label} check-in"
            rationale = (
                f"A brief {label} check-in helps you set intentions and track progress. "
                "It only takes a minute."
            )

        recommendation = DirectRecommendationCandidate(
            type=RecommendationType.CHECK_IN_CONSISTENCY_NUDGE,
            context=(
                RecommendationContext.MORNING_CHECK_IN
                if expected == CheckInType.MORNING
                else RecommendationContext.EVENING_CHECK_IN
            ),
            target_kind=TargetKind.USER_PROFILE,
            target_entity_id=None,
            target_entity_title=None,
            action_kind=ActionKind.REFLECT_PROMPT,
            title=title,
            rationale=rationale,
            score=streak_score(streak),
            action_summary=f"Complete {label} check-in",
            contributing_signal_ids=(reminder.id,),
        )
        return self.triggered(streak_severity(streak), evidence, recommendation)
