"""Manual metrics that have not been observed within cadence plus grace."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from ..assessment import DirectRecommendationCandidate
from ..models import (
    ActionKind,
    MetricCadence,
    MetricDefinitionSnapshot,
    MetricSourceType,
    RecommendationContext,
    RecommendationType,
    Severity,
    SignalEntry,
    StateSnapshot,
    TargetKind,
)
from .base import Rule, RuleOutcome, find_signal

TRIGGER_EVENTS = (
    "MetricObservationRecordedEvent",
    "MetricDefinitionCreatedEvent",
    "MorningWindowStart",
)

CRITICAL_OVERDUE_DAYS = 14

EXPECTED_DAYS = {
    MetricCadence.DAILY: 1,
    MetricCadence.WEEKLY: 7,
    MetricCadence.BIWEEKLY: 14,
    MetricCadence.MONTHLY: 30,
    MetricCadence.QUARTERLY: 90,
}

GRACE_DAYS = {
    MetricCadence.DAILY: 2,
    MetricCadence.WEEKLY: 3,
    MetricCadence.BIWEEKLY: 3,
    MetricCadence.MONTHLY: 7,
    MetricCadence.QUARTERLY: 7,
}


@dataclass(frozen=True)
class _Overdue:
    metric: MetricDefinitionSnapshot
    cadence: MetricCadence
    days_since: int | None
    expected_days: int
    days_overdue: int
    linked_goal_count: int
    linked_priority: int | None

    @property
    def never_observed(self) -> bool:
        return self.days_since is None

    def sort_key(self) -> tuple[int, float, str]:
        overdue = math.inf if self.never_observed else self.days_overdue
        return (self.linked_priority or 999, -overdue, self.metric.id)


def overdue_severity(days_overdue: int, never_observed: bool, linked_priority: int | None) -> Severity:
    if days_overdue >= CRITICAL_OVERDUE_DAYS or (linked_priority == 1 and days_overdue > 7):
        return Severity.CRITICAL
    if (linked_priority is not None and linked_priority <= 2) or days_overdue >= 7 or never_observed:
        return Severity.HIGH
    if days_overdue >= 3:
        return Severity.MEDIUM
    return Severity.LOW


def overdue_score(days_overdue: int, never_observed: bool, linked_priority: int | None) -> float:
    if days_overdue >= CRITICAL_OVERDUE_DAYS:
        base = 0.80
    elif days_overdue >= 7:
        base = 0.70
    elif days_overdue >= 3:
        base = 0.60
    else:
        base = 0.50
    if never_observed:
        base = max(base, 0.65)
    bonus = {1: 0.10, 2: 0.05}.get(linked_priority or 0, 0.0)
    return round(min(base + bonus, 0.90), 4)


class MetricObservationOverdueRule(Rule):
    rule_id = "METRIC_OBSERVATION_OVERDUE"
    name = "Metric Observation Overdue"
    description = (
        "Detects manual metrics that haven't been recorded within their expected observation cadence."
    )

    def evaluate(self, state: StateSnapshot, signals: Sequence[SignalEntry]) -> RuleOutcome:
        if find_signal(signals, *TRIGGER_EVENTS) is None:
            return self.not_triggered()

        overdue: list[_Overdue] = []
        for metric in state.metric_definitions:
            if metric.source_type != MetricSourceType.MANUAL or metric.default_cadence is None:
                continue
            cadence = metric.default_cadence
            expected = EXPECTED_DAYS.get(cadence, 7)
            threshold = expected + GRACE_DAYS.get(cadence, 3)

            if metric.last_observation_date is None:
                days_since = None
            else:
                days_since = (state.today - metric.last_observation_date).days
                if days_since <= threshold:
                    continue

            linked = [
                g
                for g in state.goals
                if g.is_active and any(m.metric_definition_id == metric.id for m in g.metrics)
            ]
            overdue.append(
                _Overdue(
                    metric=metric,
                    cadence=cadence,
                    days_since=days_since,
                    expected_days=expected,
                    days_overdue=0 if days_since is None else days_since - threshold,
                    linked_goal_count=len(linked),
                    linked_priority=min((g.priority for g in linked), default=None),
                )
            )

        if not overdue:
            return self.not_triggered()

        overdue.sort(key=_Overdue.sort_key)
        top = overdue[0]
        severity = overdue_severity(top.days_overdue, top.never_observed, top.linked_priority)
        score = overdue_score(top.days_overdue, top.never_observed, top.linked_priority)

        evidence = {
            "overdue_metric_count": len(overdue),
            "most_overdue_metric_id": top.metric.id,
            "most_overdue_metric_name": top.metric.name,
            "cadence": top.cadence.value,
            "days_since_observation": top.days_since,
            "expected_days": top.expected_days,
            "days_overdue": top.days_overdue,
            "never_observed": top.never_observed,
            "linked_goal_count": top.linked_goal_count,
            "highest_linked_priority": top.linked_priority,
            "all_overdue_metrics": [
                {
                    "id": o.metric.id,
                    "name": o.metric.name,
                    "cadence": o.cadence.value,
                    "days_since_observation": o.days_since,
                    "days_overdue": o.days_overdue,
                    "never_observed": o.never_observed,
                }
                for o in overdue
            ],
        }

        if top.never_observed:
            title = f'Record your first "{top.metric.name}" observation'
        else:
            title = f'"{top.metric.name}" needs an update ({top.cadence.value} metric)'

        recommendation = DirectRecommendationCandidate(
            type=RecommendationType.METRIC_OBSERVATION_REMINDER,
            context=RecommendationContext.PROACTIVE_CHECK,
            target_kind=TargetKind.METRIC,
            target_entity_id=top.metric.id,
            target_entity_title=top.metric.name,
            action_kind=ActionKind.UPDATE,
            title=title,
            rationale=_rationale(top),
            score=score,
            action_summary="Record metric observation",
        )
        return self.triggered(severity, evidence, recommendation)


def _rationale(item: _Overdue) -> str:
    cadence = item.cadence.value
    goal_note = ""
    if item.linked_goal_count > 0:
        goal_note = (
            f" This metric is linked to {item.linked_goal_count} goal(s), so keeping it "
            "updated helps track progress accurately."
        )

    if item.never_observed:
        return (
            f"This {cadence} metric has never been recorded. Recording an initial observation "
            f"establishes your baseline for tracking progress.{goal_note}"
        )
    if item.days_overdue >= CRITICAL_OVERDUE_DAYS:
        return (
            f"This {cadence} metric hasn't been updated in {item.days_since} days. "
            f"Without recent data, it's hard to know if you're on track.{goal_note}"
        )
    if item.days_overdue >= 7:
        return (
            f"Your last observation was {item.days_since} days ago. As a {cadence} metric, "
            f"consider recording a new observation to keep your tracking accurate.{goal_note}"
        )
    return (
        f"This {cadence} metric is due for an update "
        f"(last recorded {item.days_since} days ago).{goal_note}"
    )
