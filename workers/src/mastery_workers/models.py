"""Domain vocabulary and the read-only user state snapshot.

The snapshot is assembled upstream (one JSON document per user) and
validated here. Every pipeline stage treats it as immutable: models are
frozen and collections are never mutated in place.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> "Severity":
        return self if self.rank >= other.rank else other


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class RecommendationType(StrEnum):
    NEXT_BEST_ACTION = "next_best_action"
    TOP1_SUGGESTION = "top1_suggestion"
    HABIT_MODE_SUGGESTION = "habit_mode_suggestion"
    PLAN_REALISM_ADJUSTMENT = "plan_realism_adjustment"
    TASK_BREAK_DOWN_SUGGESTION = "task_break_down_suggestion"
    SCHEDULE_ADJUSTMENT_SUGGESTION = "schedule_adjustment_suggestion"
    PROJECT_STUCK_FIX = "project_stuck_fix"
    EXPERIMENT_RECOMMENDATION = "experiment_recommendation"
    GOAL_SCOREBOARD_SUGGESTION = "goal_scoreboard_suggestion"
    HABIT_FROM_LEAD_METRIC_SUGGESTION = "habit_from_lead_metric_suggestion"
    CHECK_IN_CONSISTENCY_NUDGE = "check_in_consistency_nudge"
    METRIC_OBSERVATION_REMINDER = "metric_observation_reminder"


class RecommendationContext(StrEnum):
    MORNING_CHECK_IN = "morning_check_in"
    EVENING_CHECK_IN = "evening_check_in"
    WEEKLY_REVIEW = "weekly_review"
    DRIFT_ALERT = "drift_alert"
    MIDDAY = "midday"
    ONBOARDING = "onboarding"
    PROACTIVE_CHECK = "proactive_check"


class ActionKind(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    REMOVE = "remove"
    EXECUTE_TODAY = "execute_today"
    DEFER = "defer"
    REFLECT_PROMPT = "reflect_prompt"
    LEARN_PROMPT = "learn_prompt"


class TargetKind(StrEnum):
    GOAL = "goal"
    HABIT = "habit"
    HABIT_OCCURRENCE = "habit_occurrence"
    TASK = "task"
    PROJECT = "project"
    EXPERIMENT = "experiment"
    METRIC = "metric"
    USER_PROFILE = "user_profile"


class SignalPriority(StrEnum):
    URGENT = "urgent"
    WINDOW_ALIGNED = "window_aligned"
    STANDARD = "standard"
    LOW = "low"


class ProcessingWindowType(StrEnum):
    IMMEDIATE = "immediate"
    MORNING_WINDOW = "morning_window"
    EVENING_WINDOW = "evening_window"
    WEEKLY_REVIEW = "weekly_review"
    BATCH_WINDOW = "batch_window"


class GoalStatus(StrEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


ProjectStatus = GoalStatus


class HabitStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class HabitMode(StrEnum):
    FULL = "full"
    MAINTENANCE = "maintenance"
    MINIMUM = "minimum"


class TaskStatus(StrEnum):
    INBOX = "inbox"
    READY = "ready"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


class ExperimentStatus(StrEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    ARCHIVED = "archived"


class CheckInType(StrEnum):
    MORNING = "morning"
    EVENING = "evening"


class CheckInStatus(StrEnum):
    DRAFT = "draft"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class MetricSourceType(StrEnum):
    MANUAL = "manual"
    HABIT = "habit"


class MetricCadence(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


_OPEN_TASK_EXCLUDED = {TaskStatus.COMPLETED, TaskStatus.CANCELLED}


class _Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True)


# --- Profile ---


class ValueSnapshot(_Snapshot):
    label: str
    rank: int = 0
    key: str | None = None


class RoleSnapshot(_Snapshot):
    label: str
    rank: int = 0
    is_active: bool = True
    season_priority: int = 3
    min_weekly_minutes: int = 0
    target_weekly_minutes: int = 0
    tags: tuple[str, ...] = ()


class SeasonSnapshot(_Snapshot):
    label: str
    type: str = "sustain"
    intensity: int = 5
    start_date: date | None = None
    expected_end_date: date | None = None
    success_statement: str | None = None
    non_negotiables: tuple[str, ...] = ()
    focus_goal_ids: tuple[str, ...] = ()


class PreferencesSnapshot(_Snapshot):
    coaching_style: str = "encouraging"
    verbosity: str = "medium"
    nudge_level: str = "medium"


class ConstraintsSnapshot(_Snapshot):
    max_planned_minutes_weekday: int | None = 480
    max_planned_minutes_weekend: int | None = 240
    health_notes: str | None = None
    content_boundaries: tuple[str, ...] = ()


class ProfileSnapshot(_Snapshot):
    timezone: str = "UTC"
    locale: str = "en-US"
    values: tuple[ValueSnapshot, ...] = ()
    roles: tuple[RoleSnapshot, ...] = ()
    current_season: SeasonSnapshot | None = None
    preferences: PreferencesSnapshot = Field(default_factory=PreferencesSnapshot)
    constraints: ConstraintsSnapshot = Field(default_factory=ConstraintsSnapshot)


# --- Entities ---


class GoalMetricSnapshot(_Snapshot):
    metric_definition_id: str | None = None
    name: str
    kind: str = "lag"
    weight: float = 1.0
    target_value: float | None = None
    current_value: float | None = None
    source_hint: str = "manual"


class GoalSnapshot(_Snapshot):
    id: str
    title: str
    status: GoalStatus = GoalStatus.ACTIVE
    priority: int = 3
    deadline: date | None = None
    metrics: tuple[GoalMetricSnapshot, ...] = ()

    @property
    def is_active(self) -> bool:
        return self.status == GoalStatus.ACTIVE

    def weighted_progress(self) -> float:
        """Weighted mean of per-metric progress, each capped at 1.0."""
        total_weight = 0.0
        weighted = 0.0
        for metric in self.metrics:
            if metric.current_value is None or not metric.target_value:
                continue
            weighted += metric.weight * min(metric.current_value / metric.target_value, 1.0)
            total_weight += metric.weight
        if total_weight <= 0:
            return 0.0
        return weighted / total_weight


class HabitSnapshot(_Snapshot):
    id: str
    title: str
    status: HabitStatus = HabitStatus.ACTIVE
    current_mode: HabitMode = HabitMode.FULL
    adherence_7day: float = 1.0
    current_streak: int = 0
    goal_ids: tuple[str, ...] = ()
    metric_binding_ids: tuple[str, ...] = ()

    @field_validator("adherence_7day")
    @classmethod
    def adherence_in_range(cls, v: float) -> float:
        if v < 0.0 or v > 1.0:
            raise ValueError("adherence_7day must be within [0, 1]")
        return v


class TaskSnapshot(_Snapshot):
    id: str
    title: str
    status: TaskStatus = TaskStatus.READY
    est_minutes: int | None = None
    energy_cost: int = 3
    priority: int = 3
    project_id: str | None = None
    goal_id: str | None = None
    scheduled_date: date | None = None
    due_date: date | None = None
    reschedule_count: int = 0
    context_tags: tuple[str, ...] = ()

    @property
    def is_open(self) -> bool:
        return self.status not in _OPEN_TASK_EXCLUDED


class ProjectSnapshot(_Snapshot):
    id: str
    title: str
    status: ProjectStatus = ProjectStatus.ACTIVE
    goal_id: str | None = None
    priority: int = 3
    total_tasks: int = 0
    completed_tasks: int = 0
    next_task_id: str | None = None
    target_end_date: date | None = None

    def progress(self) -> float:
        if self.total_tasks <= 0:
            return 0.0
        return self.completed_tasks / self.total_tasks


class ExperimentSnapshot(_Snapshot):
    id: str
    title: str
    status: ExperimentStatus = ExperimentStatus.DRAFT
    start_date: date | None = None


class CheckInSnapshot(_Snapshot):
    id: str
    date: date
    type: CheckInType
    status: CheckInStatus = CheckInStatus.COMPLETED
    energy_level: int | None = None


class MetricDefinitionSnapshot(_Snapshot):
    id: str
    name: str
    source_type: MetricSourceType = MetricSourceType.MANUAL
    default_cadence: MetricCadence | None = None
    last_observation_date: date | None = None


class StateSnapshot(_Snapshot):
    """Everything the pipeline knows about one user, as of ``today``."""

    user_id: str
    today: date
    check_in_streak: int = 0
    profile: ProfileSnapshot = Field(default_factory=ProfileSnapshot)
    goals: tuple[GoalSnapshot, ...] = ()
    habits: tuple[HabitSnapshot, ...] = ()
    tasks: tuple[TaskSnapshot, ...] = ()
    projects: tuple[ProjectSnapshot, ...] = ()
    experiments: tuple[ExperimentSnapshot, ...] = ()
    recent_check_ins: tuple[CheckInSnapshot, ...] = ()
    metric_definitions: tuple[MetricDefinitionSnapshot, ...] = ()

    def goal_by_id(self, goal_id: str | None) -> GoalSnapshot | None:
        if goal_id is None:
            return None
        for goal in self.goals:
            if goal.id == goal_id:
                return goal
        return None

    def task_by_id(self, task_id: str | None) -> TaskSnapshot | None:
        if task_id is None:
            return None
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None


class SignalEntry(BaseModel):
    """One queued event considered by a pipeline run."""

    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    event_type: str
    priority: SignalPriority = SignalPriority.STANDARD
    window_type: ProcessingWindowType = ProcessingWindowType.IMMEDIATE
    target_entity_type: str | None = None
    target_entity_id: str | None = None
    scheduled_window_start: datetime | None = None
    created_at: datetime | None = None
    event_data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("event_type")
    @classmethod
    def event_type_not_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("event_type must not be empty")
        return v
