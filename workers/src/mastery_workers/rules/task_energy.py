"""High-energy tasks scheduled on a day the user reported low energy."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import timedelta

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
from .base import Err, Rule, RuleOutcome

LOW_ENERGY_THRESHOLD = 3
HIGH_ENERGY_TASK_THRESHOLD = 4
HIGH_PRIORITY_THRESHOLD = 3
DEFAULT_TASK_MINUTES = 30
DEFAULT_CAPACITY_MINUTES = 480

_SEVERITY_SCORE = {
    Severity.CRITICAL: 0.95,
    Severity.HIGH: 0.85,
    Severity.MEDIUM: 0.75,
    Severity.LOW: 0.65,
}


def mismatch_severity(energy: int, burden: float, has_high_priority: bool) -> Severity:
    if energy <= 1:
        return Severity.CRITICAL if burden > 0.5 else Severity.HIGH
    if energy == 2:
        return Severity.HIGH if burden > 0.5 and has_high_priority else Severity.MEDIUM
    if energy == 3 and burden > 0.5:
        return Severity.MEDIUM
    return Severity.LOW


class TaskEnergyMismatchRule(Rule):
    rule_id = "TASK_ENERGY_MISMATCH"
    name = "Energy Mismatch Detection"
    description = "Detects when high-energy tasks are scheduled on low-energy days."

    def evaluate(self, state: StateSnapshot, signals: Sequence[SignalEntry]) -> RuleOutcome:
        check_in = next(
            (
                c
                for c in state.recent_check_ins
                if c.date == state.today and c.type == CheckInType.MORNING
            ),
            None,
        )
        if check_in is None or check_in.energy_level is None:
            return self.not_triggered()
        energy = check_in.energy_level
        if energy > LOW_ENERGY_THRESHOLD:
            return self.not_triggered()

        heavy = [
            t
            for t in state.tasks
            if t.scheduled_date == state.today
            and t.is_open
            and t.energy_cost >= HIGH_ENERGY_TASK_THRESHOLD
        ]
        if not heavy:
            return self.not_triggered()

        imminent = state.today + timedelta(days=1)
        critical_ids = {
            t.id
            for t in heavy
            if t.due_date is not None
            and t.due_date <= imminent
            and t.priority >= HIGH_PRIORITY_THRESHOLD
        }
        deferrable = [t for t in heavy if t.id not in critical_ids]
        if not deferrable:
            return self.not_triggered()

        capacity = state.profile.constraints.max_planned_minutes_weekday
        if capacity is None:
            capacity = DEFAULT_CAPACITY_MINUTES
        if capacity <= 0:
            return Err(f"weekday capacity must be positive, got {capacity}")

        total_minutes = sum(t.est_minutes or DEFAULT_TASK_MINUTES for t in heavy)
        burden = total_minutes / capacity
        has_high_priority = any(t.priority >= HIGH_PRIORITY_THRESHOLD for t in heavy)
        severity = mismatch_severity(energy, burden, has_high_priority)

        evidence = {
            "reported_energy_level": energy,
            "high_energy_task_count": len(heavy),
            "total_high_energy_minutes": total_minutes,
            "capacity_minutes": capacity,
            "burden_ratio": round(burden, 2),
            "critical_deadline_count": len(critical_ids),
            "deferrable_task_count": len(deferrable),
            "high_energy_tasks": [
                {
                    "id": t.id,
                    "title": t.title,
                    "energy_cost": t.energy_cost,
                    "priority": t.priority,
                    "due_date": t.due_date.isoformat() if t.due_date else None,
                    "est_minutes": t.est_minutes or DEFAULT_TASK_MINUTES,
                    "is_critical": t.id in critical_ids,
                }
                for t in heavy
            ],
        }

        to_defer = sorted(
            deferrable,
            key=lambda t: (-t.energy_cost, -(t.est_minutes or DEFAULT_TASK_MINUTES), t.id),
        )[0]

        rationale = (
            f"You reported low energy ({energy}/5) today, but have {len(heavy)} high-energy "
            f"tasks scheduled ({total_minutes} min total). "
        )
        if critical_ids:
            rationale += (
                f"{len(critical_ids)} task(s) have critical deadlines and should stay. "
                f'Consider deferring "{to_defer.title}" to preserve energy for what matters most.'
            )
        else:
            rationale += (
                "Consider deferring demanding tasks to preserve what energy you have for essentials."
            )

        recommendation = DirectRecommendationCandidate(
            type=RecommendationType.SCHEDULE_ADJUSTMENT_SUGGESTION,
            context=RecommendationContext.MORNING_CHECK_IN,
            target_kind=TargetKind.TASK,
            target_entity_id=to_defer.id,
            target_entity_title=to_defer.title,
            action_kind=ActionKind.DEFER,
            title=f'Consider rescheduling "{to_defer.title}" (energy level {energy}/5)',
            rationale=rationale,
            score=_SEVERITY_SCORE[severity],
            action_payload={
                "taskId": to_defer.id,
                "newDate": imminent.isoformat(),
                "reason": f"Low reported energy ({energy}/5)",
            },
            action_summary="Defer to a higher-energy day",
        )
        return self.triggered(severity, evidence, recommendation)
