"""Domain commands emitted when a recommendation is accepted.

Commands are plain frozen dataclasses. Create commands pre-assign the id
of the entity they create so the dispatcher can report it before the
domain service has run.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, ClassVar, Protocol

import psycopg
from psycopg.types.json import Json

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class CreateTaskCommand:
    command_type: ClassVar[str] = "task.create"

    title: str
    description: str | None = None
    estimated_minutes: int = 30
    energy_cost: int = 3
    priority: int = 3
    project_id: str | None = None
    goal_id: str | None = None
    context_tags: tuple[str, ...] = ()
    start_as_ready: bool = True
    entity_id: str = field(default_factory=_new_id)


@dataclass(frozen=True)
class HabitScheduleInput:
    type: str = "Daily"
    days_of_week: tuple[int, ...] | None = None
    frequency_per_week: int | None = None


@dataclass(frozen=True)
class CreateHabitCommand:
    command_type: ClassVar[str] = "habit.create"

    title: str
    schedule: HabitScheduleInput = field(default_factory=HabitScheduleInput)
    description: str | None = None
    why: str | None = None
    default_mode: str = "full"
    entity_id: str = field(default_factory=_new_id)


@dataclass(frozen=True)
class CreateExperimentCommand:
    command_type: ClassVar[str] = "experiment.create"

    title: str
    change: str
    expected_outcome: str
    start_date: date
    category: str = "behavioral"
    created_from: str = "ai_recommendation"
    description: str | None = None
    hypothesis_rationale: str | None = None
    primary_metric_definition_id: str | None = None
    primary_aggregation: str = "average"
    run_window_days: int = 14
    entity_id: str = field(default_factory=_new_id)


@dataclass(frozen=True)
class CreateGoalCommand:
    command_type: ClassVar[str] = "goal.create"

    title: str
    description: str | None = None
    why: str | None = None
    priority: int = 3
    deadline: date | None = None
    entity_id: str = field(default_factory=_new_id)


@dataclass(frozen=True)
class CreateMetricCommand:
    command_type: ClassVar[str] = "metric.create"

    name: str
    description: str | None = None
    data_type: str = "number"
    direction: str = "increase"
    default_cadence: str = "daily"
    default_aggregation: str = "sum"
    entity_id: str = field(default_factory=_new_id)


@dataclass(frozen=True)
class CreateProjectCommand:
    command_type: ClassVar[str] = "project.create"

    title: str
    description: str | None = None
    priority: int = 3
    goal_id: str | None = None
    entity_id: str = field(default_factory=_new_id)


@dataclass(frozen=True)
class UpdateHabitCommand:
    command_type: ClassVar[str] = "habit.update"

    habit_id: str
    default_mode: str | None = None

    @property
    def entity_id(self) -> str:
        return self.habit_id


@dataclass(frozen=True)
class ScheduleTaskCommand:
    command_type: ClassVar[str] = "task.schedule"

    task_id: str
    scheduled_on: date

    @property
    def entity_id(self) -> str:
        return self.task_id


@dataclass(frozen=True)
class RescheduleTaskCommand:
    command_type: ClassVar[str] = "task.reschedule"

    task_id: str
    new_date: date
    reason: str | None = None

    @property
    def entity_id(self) -> str:
        return self.task_id


DomainCommand = (
    CreateTaskCommand
    | CreateHabitCommand
    | CreateExperimentCommand
    | CreateGoalCommand
    | CreateMetricCommand
    | CreateProjectCommand
    | UpdateHabitCommand
    | ScheduleTaskCommand
    | RescheduleTaskCommand
)


def command_payload(command: DomainCommand) -> dict[str, Any]:
    """JSON-friendly body of a command, tagged with its type."""
    body = asdict(command)
    for key, value in body.items():
        if isinstance(value, date):
            body[key] = value.isoformat()
        elif isinstance(value, tuple):
            body[key] = list(value)
    return {"command_type": command.command_type, "entity_id": command.entity_id, **body}


class CommandBus(Protocol):
    async def send(self, user_id: str, command: DomainCommand) -> str | None: ...


class JobQueueCommandBus:
    """Hands commands to the domain service through background_jobs."""

    JOB_TYPE = "domain.command"

    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self.conn = conn

    async def send(self, user_id: str, command: DomainCommand) -> str | None:
        payload = command_payload(command)
        async with self.conn.cursor() as cur:
            await cur.execute(
                """
                INSERT INTO background_jobs (user_id, job_type, payload)
                VALUES (%s, %s, %s)
                """,
                (user_id, self.JOB_TYPE, Json(payload)),
            )
        logger.debug(
            "Enqueued %s for user %s (entity %s)",
            command.command_type,
            user_id,
            command.entity_id,
        )
        return command.entity_id
