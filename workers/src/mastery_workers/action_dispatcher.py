"""Turn an accepted recommendation into one domain command.

Dispatch is keyed on ``(action_kind, target_kind)``. Reflect and learn
prompts have nothing to execute. Execution is best effort: a payload that
does not parse, or an unsupported combination, is logged and yields no
entity id instead of raising.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import date
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .assessment import Recommendation
from .commands import (
    CommandBus,
    CreateExperimentCommand,
    CreateGoalCommand,
    CreateHabitCommand,
    CreateMetricCommand,
    CreateProjectCommand,
    CreateTaskCommand,
    DomainCommand,
    HabitScheduleInput,
    RescheduleTaskCommand,
    ScheduleTaskCommand,
    UpdateHabitCommand,
)
from .models import ActionKind, TargetKind

logger = logging.getLogger(__name__)


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateTaskPayload(_Payload):
    title: str
    description: str | None = None
    est_minutes: int | None = None
    energy_cost: int | None = None
    priority: int | None = None
    project_id: str | None = None
    goal_id: str | None = None
    context_tags: list[str] | None = None
    start_as_ready: bool | None = None


class HabitSchedulePayload(_Payload):
    type: str
    days_of_week: list[int] | None = None
    frequency_per_week: int | None = None


class CreateHabitPayload(_Payload):
    title: str
    description: str | None = None
    why: str | None = None
    default_mode: str | None = None
    schedule: HabitSchedulePayload | None = None


class HypothesisPayload(_Payload):
    change: str
    expected_outcome: str
    rationale: str | None = None


class MeasurementPlanPayload(_Payload):
    primary_metric_definition_id: str | None = None
    primary_aggregation: str | None = None
    run_window_days: int | None = Field(None, gt=0)


class CreateExperimentPayload(_Payload):
    title: str
    description: str | None = None
    category: str | None = None
    hypothesis: HypothesisPayload | None = None
    measurement_plan: MeasurementPlanPayload | None = None


class CreateGoalPayload(_Payload):
    title: str
    description: str | None = None
    why: str | None = None
    priority: int | None = None
    deadline: date | None = None


class CreateMetricPayload(_Payload):
    name: str
    description: str | None = None
    data_type: str | None = None
    direction: str | None = None
    default_cadence: str | None = None
    default_aggregation: str | None = None


class CreateProjectPayload(_Payload):
    title: str
    description: str | None = None
    priority: int | None = None
    goal_id: str | None = None


class UpdateHabitPayload(_Payload):
    habit_id: str = Field(min_length=1)
    default_mode: str | None = None


class ScheduleTaskPayload(_Payload):
    task_id: str = Field(min_length=1)


class RescheduleTaskPayload(_Payload):
    task_id: str = Field(min_length=1)
    new_date: date
    reason: str | None = None


CommandBuilder = Callable[[Mapping[str, Any], date], DomainCommand]


def _build_create_task(raw: Mapping[str, Any], today: date) -> DomainCommand:
    p = CreateTaskPayload.model_validate(raw)
    return CreateTaskCommand(
        title=p.title,
        description=p.description,
        estimated_minutes=p.est_minutes if p.est_minutes is not None else 30,
        energy_cost=p.energy_cost if p.energy_cost is not None else 3,
        priority=p.priority if p.priority is not None else 3,
        project_id=p.project_id,
        goal_id=p.goal_id,
        context_tags=tuple(p.context_tags or ()),
        start_as_ready=p.start_as_ready if p.start_as_ready is not None else True,
    )


def _build_create_habit(raw: Mapping[str, Any], today: date) -> DomainCommand:
    p = CreateHabitPayload.model_validate(raw)
    schedule = HabitScheduleInput()
    if p.schedule is not None:
        schedule = HabitScheduleInput(
            type=p.schedule.type,
            days_of_week=tuple(p.schedule.days_of_week) if p.schedule.days_of_week else None,
            frequency_per_week=p.schedule.frequency_per_week,
        )
    return CreateHabitCommand(
        title=p.title,
        schedule=schedule,
        description=p.description,
        why=p.why,
        default_mode=p.default_mode or "full",
    )


def _build_create_experiment(raw: Mapping[str, Any], today: date) -> DomainCommand:
    p = CreateExperimentPayload.model_validate(raw)
    plan = p.measurement_plan or MeasurementPlanPayload()
    return CreateExperimentCommand(
        title=p.title,
        change=p.hypothesis.change if p.hypothesis else p.title,
        expected_outcome=(
            p.hypothesis.expected_outcome if p.hypothesis else "Improvement expected"
        ),
        hypothesis_rationale=p.hypothesis.rationale if p.hypothesis else None,
        start_date=today,
        category=p.category or "behavioral",
        description=p.description,
        primary_metric_definition_id=plan.primary_metric_definition_id,
        primary_aggregation=plan.primary_aggregation or "average",
        run_window_days=plan.run_window_days or 14,
    )


def _build_create_goal(raw: Mapping[str, Any], today: date) -> DomainCommand:
    p = CreateGoalPayload.model_validate(raw)
    return CreateGoalCommand(
        title=p.title,
        description=p.description,
        why=p.why,
        priority=p.priority if p.priority is not None else 3,
        deadline=p.deadline,
    )


def _build_create_metric(raw: Mapping[str, Any], today: date) -> DomainCommand:
    p = CreateMetricPayload.model_validate(raw)
    return CreateMetricCommand(
        name=p.name,
        description=p.description,
        data_type=p.data_type or "number",
        direction=p.direction or "increase",
        default_cadence=p.default_cadence or "daily",
        default_aggregation=p.default_aggregation or "sum",
    )


def _build_create_project(raw: Mapping[str, Any], today: date) -> DomainCommand:
    p = CreateProjectPayload.model_validate(raw)
    return CreateProjectCommand(
        title=p.title,
        description=p.description,
        priority=p.priority if p.priority is not None else 3,
        goal_id=p.goal_id,
    )


def _build_update_habit(raw: Mapping[str, Any], today: date) -> DomainCommand:
    p = UpdateHabitPayload.model_validate(raw)
    return UpdateHabitCommand(habit_id=p.habit_id, default_mode=p.default_mode)


def _build_schedule_task(raw: Mapping[str, Any], today: date) -> DomainCommand:
    p = ScheduleTaskPayload.model_validate(raw)
    return ScheduleTaskCommand(task_id=p.task_id, scheduled_on=today)


def _build_reschedule_task(raw: Mapping[str, Any], today: date) -> DomainCommand:
    p = RescheduleTaskPayload.model_validate(raw)
    return RescheduleTaskCommand(task_id=p.task_id, new_date=p.new_date, reason=p.reason)


DISPATCH_TABLE: dict[tuple[ActionKind, TargetKind], CommandBuilder] = {
    (ActionKind.CREATE, TargetKind.TASK): _build_create_task,
    (ActionKind.CREATE, TargetKind.HABIT): _build_create_habit,
    (ActionKind.CREATE, TargetKind.EXPERIMENT): _build_create_experiment,
    (ActionKind.CREATE, TargetKind.GOAL): _build_create_goal,
    (ActionKind.CREATE, TargetKind.METRIC): _build_create_metric,
    (ActionKind.CREATE, TargetKind.PROJECT): _build_create_project,
    (ActionKind.UPDATE, TargetKind.HABIT): _build_update_habit,
    (ActionKind.EXECUTE_TODAY, TargetKind.TASK): _build_schedule_task,
    (ActionKind.DEFER, TargetKind.TASK): _build_reschedule_task,
}

NO_OP_ACTIONS = frozenset({ActionKind.REFLECT_PROMPT, ActionKind.LEARN_PROMPT})


def build_command(recommendation: Recommendation, today: date) -> DomainCommand | None:
    """Translate a recommendation into its command, or ``None`` when there is none.

    Raises ``ValidationError`` when the payload does not fit the command.
    """
    if recommendation.action_kind in NO_OP_ACTIONS:
        return None
    builder = DISPATCH_TABLE.get((recommendation.action_kind, recommendation.target.kind))
    if builder is None:
        logger.warning(
            "Unsupported action/target combination %s/%s for recommendation %s",
            recommendation.action_kind.value,
            recommendation.target.kind.value,
            recommendation.id,
        )
        return None
    if not recommendation.action_payload:
        logger.debug("Recommendation %s has no action payload, skipping", recommendation.id)
        return None
    return builder(recommendation.action_payload, today)


class ActionDispatcher:
    def __init__(
        self,
        bus: CommandBus,
        *,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.bus = bus
        self.today = today

    async def execute(self, recommendation: Recommendation) -> str | None:
        """Send the recommendation's command; returns the affected entity id."""
        try:
            command = build_command(recommendation, self.today())
        except (ValidationError, KeyError, ValueError, TypeError) as exc:
            logger.warning(
                "Could not parse action payload for recommendation %s (%s/%s): %s",
                recommendation.id,
                recommendation.action_kind.value,
                recommendation.target.kind.value,
                exc,
            )
            return None
        if command is None:
            return None

        entity_id = await self.bus.send(recommendation.user_id, command)
        logger.info(
            "Executed recommendation %s as %s (entity %s)",
            recommendation.id,
            command.command_type,
            entity_id,
        )
        return entity_id


