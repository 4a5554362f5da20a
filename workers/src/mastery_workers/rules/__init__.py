"""Tier 0 deterministic rules.

The engine receives an explicit rule list; ``default_rules()`` is the
production set in evaluation order.
"""

from .base import Err, Ok, Rule, RuleOutcome
from .checkin_missing import CheckInMissingRule
from .deadline_proximity import DeadlineProximityRule
from .habit_adherence import HabitAdherenceThresholdRule
from .metric_observation import MetricObservationOverdueRule
from .recurring_task import RecurringTaskStalenessRule
from .task_energy import TaskEnergyMismatchRule


def default_rules() -> list[Rule]:
    return [
        CheckInMissingRule(),
        DeadlineProximityRule(),
        HabitAdherenceThresholdRule(),
        MetricObservationOverdueRule(),
        RecurringTaskStalenessRule(),
        TaskEnergyMismatchRule(),
    ]


__all__ = [
    "CheckInMissingRule",
    "DeadlineProximityRule",
    "Err",
    "HabitAdherenceThresholdRule",
    "MetricObservationOverdueRule",
    "Ok",
    "RecurringTaskStalenessRule",
    "Rule",
    "RuleOutcome",
    "TaskEnergyMismatchRule",
    "default_rules",
]
