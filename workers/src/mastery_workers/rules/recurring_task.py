"""Routine tasks that keep slipping."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from ..assessment import DirectRecommendationCandidate
from ..models import (
    ActionKind,
    RecommendationContext,
    RecommendationType,
    Severity,
    SignalEntry,
    StateSnapshot,
    TargetKind,
    TaskSnapshot,
)
from .base import Rule, RuleOutcome, find_signal

TRIGGER_EVENTS = (
    "TaskCreatedEvent",
    "TaskUpdatedEvent",
    "TaskRescheduledEvent",
    "MorningWindowStart",
)

MIN_RESCHEDULES = 2
HIGH_RESCHEDULES = 3
CHRONIC_RESCHEDULES = 5

RECURRING_TAGS = frozenset({
    "weekly", "daily", "monthly", "routine", "recurring", "regular",
    "review", "planning", "sync", "standup", "meeting", "check-in",
})

RECURRING_TITLE_PATTERNS = (
    "weekly", "daily", "monthly", "review", "planning",
    "monday", "tuesday", "wednesday", "thursday", "friday",
    "saturday", "sunday", "morning", "evening",
)


def has_recurring_tag(task: TaskSnapshot) -> bool:
    return any(tag.strip().lower() in RECURRING_TAGS for tag in task.context_tags)


def has_recurring_title(task: TaskSnapshot) -> bool:
    title = task.title.lower()
    return any(pattern in title for pattern in RECURRING_TITLE_PATTERNS)


@dataclass(frozen=True)
class _Stale:
    task: TaskSnapshot
    by_tag: bool
    by_title: bool
    days_past_scheduled: int
    linked_priority: int | None

    @property
    def routine(self) -> bool:
        return self.by_tag or self.by_title

    @property
    def reschedules(self) -> int:
        return self.task.reschedule_count


def staleness_severity(reschedules: int, days_past: int, routine: bool) -> Severity:
    if reschedules >= CHRONIC_RESCHEDULES or (routine and days_past >= 7):
        return Severity.CRITICAL
    if reschedules >= HIGH_RESCHEDULES or days_past >= 3:
        return Severity.HIGH
    if reschedules >= MIN_RESCHEDULES or days_past > 0:
        return Severity.MEDIUM
    return Severity.LOW


def staleness_score(reschedules: int, routine: bool) -> float:
    if reschedules >= CHRONIC_RESCHEDULES:
        base = 0.85
    elif reschedules >= HIGH_RESCHEDULES:
        base = 0.75
    elif reschedules >= MIN_RESCHEDULES:
        base = 0.65
    else:
        base = 0.55
    if routine:
        base += 0.05
    return round(min(base, 0.90), 4)


class RecurringTaskStalenessRule(Rule):
    rule_id = "RECURRING_TASK_STALENESS"
    name = "Recurring Task Staleness"
    description = "Detects routine/recurring tasks that have gone stale through repeated deferrals."

    def evaluate(self, state: StateSnapshot, signals: Sequence[SignalEntry]) -> RuleOutcome:
        if find_signal(signals, *TRIGGER_EVENTS) is None:
            return self.not_triggered()

        stale: list[_Stale] = []
        for task in state.tasks:
            if not task.is_open:
                continue
            by_tag = has_recurring_tag(task)
            by_title = has_recurring_title(task)
            if not (by_tag or by_title) and task.reschedule_count < MIN_RESCHEDULES:
                continue

            days_past = 0
            if task.scheduled_date is not None and task.scheduled_date < state.today:
                days_past = (state.today - task.scheduled_date).days
            if task.reschedule_count < MIN_RESCHEDULES and days_past <= 0:
                continue

            stale.append(
                _Stale(
                    task=task,
                    by_tag=by_tag,
                    by_title=by_title,
                    days_past_scheduled=days_past,
                    linked_priority=self._linked_priority(state, task),
                )
            )

        if not stale:
            return self.not_triggered()

        stale.sort(key=lambda s: (-s.reschedules, s.linked_priority or 999, s.task.id))
        top = stale[0]
        chronic = top.reschedules >= CHRONIC_RESCHEDULES

        evidence = {
            "stale_task_count": len(stale),
            "most_stale_task_id": top.task.id,
            "most_stale_task_title": top.task.title,
            "reschedule_count": top.reschedules,
            "days_past_scheduled": top.days_past_scheduled,
            "is_recurring_by_tag": top.by_tag,
            "is_recurring_by_title": top.by_title,
            "context_tags": list(top.task.context_tags),
            "linked_priority": top.linked_priority,
            "all_stale_tasks": [
                {
                    "id": s.task.id,
                    "title": s.task.title,
                    "reschedule_count": s.reschedules,
                    "days_past_scheduled": s.days_past_scheduled,
                    "routine": s.routine,
                }
                for s in stale
            ],
        }

        if chronic:
            title = f'"{top.task.title}" has been deferred {top.reschedules} times'
        else:
            title = f'"{top.task.title}" keeps getting pushed back'

        recommendation = DirectRecommendationCandidate(
            type=RecommendationType.SCHEDULE_ADJUSTMENT_SUGGESTION,
            context=RecommendationContext.DRIFT_ALERT,
            target_kind=TargetKind.TASK,
            target_entity_id=top.task.id,
            target_entity_title=top.task.title,
            action_kind=ActionKind.REFLECT_PROMPT if chronic else ActionKind.EXECUTE_TODAY,
            title=title,
            rationale=_rationale(top),
            score=staleness_score(top.reschedules, top.routine),
            action_payload=None if chronic else {"taskId": top.task.id},
            action_summary=(
                "Decide: commit, delegate, or archive"
                if chronic
                else "Complete today or rethink approach"
            ),
        )
        severity = staleness_severity(top.reschedules, top.days_past_scheduled, top.routine)
        return self.triggered(severity, evidence, recommendation)

    @staticmethod
    def _linked_priority(state: StateSnapshot, task: TaskSnapshot) -> int | None:
        goal = state.goal_by_id(task.goal_id)
        if goal is not None:
            return goal.priority
        if task.project_id is not None:
            for project in state.projects:
                if project.id == task.project_id:
                    return project.priority
        return None


def _rationale(item: _Stale) -> str:
    routine_note = ""
    if item.routine:
        routine_note = (
            " This appears to be a routine task, so missing it repeatedly may disrupt your workflow."
        )
    count = item.reschedules
    if count >= CHRONIC_RESCHEDULES:
        return (
            f"This task has been rescheduled {count} times without completion. Consider whether "
            f"it's truly important, needs to be broken down, or should be archived.{routine_note}"
        )
    if count >= HIGH_RESCHEDULES:
        return (
            f"You've deferred this task {count} times. What's blocking you from completing it? "
            f"Consider addressing the root cause or adjusting expectations.{routine_note}"
        )
    if count > 0:
        return (
            f"This task has been rescheduled {count} time(s). If it keeps slipping, consider "
            f"why: is it too big, unclear, or low priority?{routine_note}"
        )
    return (
        f"This task is {item.days_past_scheduled} day(s) past its scheduled date."
        f"{routine_note}"
    )
