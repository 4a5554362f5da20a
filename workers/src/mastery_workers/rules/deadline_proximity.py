"""Deadline proximity: imminent or missed deadlines with too little progress.

Required progress slides with the remaining time: 50% inside the 48h warning
window, 75% inside the 24h urgent window. Overdue items always qualify.
Hours are whole days times 24 since the snapshot carries dates only.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from ..assessment import DirectRecommendationCandidate
from ..models import (
    ActionKind,
    GoalStatus,
    ProjectStatus,
    RecommendationContext,
    RecommendationType,
    Severity,
    SignalEntry,
    StateSnapshot,
    TargetKind,
)
from .base import Rule, RuleOutcome

WARNING_HOURS = 48
URGENT_HOURS = 24
WARNING_PROGRESS = 0.5
URGENT_PROGRESS = 0.75
ITEM_COUNT_THRESHOLD = 3


@dataclass(frozen=True)
class _DeadlineItem:
    kind: TargetKind
    id: str
    title: str
    hours_until: int
    progress: float

    @property
    def overdue(self) -> bool:
        return self.hours_until <= 0


def _required_progress(hours_until: int) -> float:
    return URGENT_PROGRESS if hours_until <= URGENT_HOURS else WARNING_PROGRESS


def _qualifies(hours_until: int, progress: float) -> bool:
    return hours_until <= 0 or progress < _required_progress(hours_until)


class DeadlineProximityRule(Rule):
    rule_id = "DEADLINE_PROXIMITY"
    name = "Deadline Proximity Alert"
    description = "Detects tasks and projects with imminent deadlines and insufficient progress."

    def evaluate(self, state: StateSnapshot, signals: Sequence[SignalEntry]) -> RuleOutcome:
        items = self._collect(state)
        if not items:
            return self.not_triggered()

        most_urgent = min(items, key=lambda i: i.hours_until)
        overdue_count = sum(1 for i in items if i.overdue)
        critical = (
            most_urgent.hours_until <= URGENT_HOURS
            or overdue_count > 0
            or len(items) >= ITEM_COUNT_THRESHOLD
        )
        severity = Severity.CRITICAL if critical else Severity.HIGH

        kind_label = most_urgent.kind.value
        progress_pct = round(most_urgent.progress * 100)
        evidence = {
            "urgent_item_count": len(items),
            "overdue_count": overdue_count,
            "most_urgent_type": kind_label,
            "most_urgent_id": most_urgent.id,
            "most_urgent_title": most_urgent.title,
            "most_urgent_hours_until": most_urgent.hours_until,
            "most_urgent_is_overdue": most_urgent.overdue,
            "most_urgent_progress_pct": round(most_urgent.progress * 100, 1),
            "all_urgent_items": [
                {
                    "type": i.kind.value,
                    "id": i.id,
                    "title": i.title,
                    "hours_until": i.hours_until,
                    "is_overdue": i.overdue,
                }
                for i in items
            ],
        }

        if most_urgent.overdue:
            title = (
                f'Overdue: "{most_urgent.title}" was due {abs(most_urgent.hours_until)} hours ago'
            )
            rationale = (
                f"This {kind_label} is past its deadline with only {progress_pct}% progress. "
                "Address this immediately or reschedule."
            )
        else:
            title = f'Urgent: "{most_urgent.title}" due in {most_urgent.hours_until} hours'
            rationale = (
                f"This {kind_label} is due soon with only {progress_pct}% progress. "
                "Focus on this today to avoid missing the deadline."
            )

        payload = {"taskId": most_urgent.id} if most_urgent.kind == TargetKind.TASK else None
        recommendation = DirectRecommendationCandidate(
            type=RecommendationType.NEXT_BEST_ACTION,
            context=RecommendationContext.DRIFT_ALERT,
            target_kind=most_urgent.kind,
            target_entity_id=most_urgent.id,
            target_entity_title=most_urgent.title,
            action_kind=ActionKind.EXECUTE_TODAY,
            title=title,
            rationale=rationale,
            score=0.98 if most_urgent.overdue else 0.95,
            action_payload=payload,
            action_summary=f"Prioritize {kind_label} completion",
        )
        return self.triggered(severity, evidence, recommendation)

    def _collect(self, state: StateSnapshot) -> list[_DeadlineItem]:
        items: list[_DeadlineItem] = []

        for task in state.tasks:
            if task.due_date is None or not task.is_open:
                continue
            hours = (task.due_date - state.today).days * 24
            # Tasks have no partial progress
            if hours <= WARNING_HOURS:
                items.append(_DeadlineItem(TargetKind.TASK, task.id, task.title, hours, 0.0))

        for project in state.projects:
            if project.target_end_date is None or project.status != ProjectStatus.ACTIVE:
                continue
            hours = (project.target_end_date - state.today).days * 24
            progress = project.progress()
            if hours <= WARNING_HOURS and _qualifies(hours, progress):
                items.append(
                    _DeadlineItem(TargetKind.PROJECT, project.id, project.title, hours, progress)
                )

        for goal in state.goals:
            if goal.deadline is None or goal.status != GoalStatus.ACTIVE:
                continue
            hours = (goal.deadline - state.today).days * 24
            progress = goal.weighted_progress()
            if hours <= WARNING_HOURS and _qualifies(hours, progress):
                items.append(_DeadlineItem(TargetKind.GOAL, goal.id, goal.title, hours, progress))

        return items
