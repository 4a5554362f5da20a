"""Tests for the Tier 0 deterministic rules."""

from datetime import date, datetime, timedelta, timezone

import pytest

from mastery_workers.models import (
    ActionKind,
    CheckInSnapshot,
    CheckInType,
    ConstraintsSnapshot,
    GoalMetricSnapshot,
    GoalSnapshot,
    HabitMode,
    HabitSnapshot,
    HabitStatus,
    MetricCadence,
    MetricDefinitionSnapshot,
    MetricSourceType,
    ProfileSnapshot,
    ProjectSnapshot,
    RecommendationContext,
    RecommendationType,
    Severity,
    SignalEntry,
    StateSnapshot,
    TargetKind,
    TaskSnapshot,
    TaskStatus,
)
from mastery_workers.rules import (
    CheckInMissingRule,
    DeadlineProximityRule,
    Err,
    HabitAdherenceThresholdRule,
    MetricObservationOverdueRule,
    Ok,
    RecurringTaskStalenessRule,
    TaskEnergyMismatchRule,
    default_rules,
)
from mastery_workers.rules.checkin_missing import streak_score, streak_severity
from mastery_workers.rules.habit_adherence import adherence_severity
from mastery_workers.rules.metric_observation import overdue_score, overdue_severity
from mastery_workers.rules.recurring_task import staleness_score, staleness_severity
from mastery_workers.rules.task_energy import mismatch_severity

TODAY = date(2026, 3, 10)


def _state(**kwargs) -> StateSnapshot:
    return StateSnapshot(user_id="u-1", today=TODAY, **kwargs)


def _signal(event_type: str, signal_id: int = 1, **kwargs) -> SignalEntry:
    return SignalEntry(id=signal_id, user_id="u-1", event_type=event_type, **kwargs)


def _result(outcome):
    assert isinstance(outcome, Ok), outcome
    return outcome.value


def test_default_rules_are_unique_and_enabled():
    rules = default_rules()
    ids = [r.rule_id for r in rules]
    assert len(ids) == 6
    assert len(set(ids)) == 6
    assert all(r.enabled for r in rules)


class TestCheckInMissing:
    def test_no_window_signal_is_silent(self):
        result = _result(CheckInMissingRule().evaluate(_state(), [_signal("TaskCreatedEvent")]))
        assert result.triggered is False

    def test_morning_window_without_check_in_triggers(self):
        scheduled = datetime(2026, 3, 10, 7, 0, tzinfo=timezone.utc)
        signal = _signal("MorningWindowStart", signal_id=7, scheduled_window_start=scheduled)
        result = _result(CheckInMissingRule().evaluate(_state(check_in_streak=3), [signal]))

        assert result.triggered is True
        assert result.severity == Severity.LOW
        rec = result.direct_recommendation
        assert rec.type == RecommendationType.CHECK_IN_CONSISTENCY_NUDGE
        assert rec.context == RecommendationContext.MORNING_CHECK_IN
        assert rec.target_kind == TargetKind.USER_PROFILE
        assert rec.action_kind == ActionKind.REFLECT_PROMPT
        assert rec.contributing_signal_ids == (7,)
        assert "3-day" in rec.title
        assert result.evidence["expected_check_in_type"] == "morning"
        assert result.evidence["signal_scheduled_at"] == scheduled.isoformat()

    def test_completed_morning_check_in_suppresses(self):
        check_in = CheckInSnapshot(id="c-1", date=TODAY, type=CheckInType.MORNING)
        state = _state(recent_check_ins=(check_in,))
        result = _result(CheckInMissingRule().evaluate(state, [_signal("MorningWindowStart")]))
        assert result.triggered is False

    def test_evening_window_only_cares_about_evening(self):
        check_in = CheckInSnapshot(id="c-1", date=TODAY, type=CheckInType.MORNING)
        state = _state(recent_check_ins=(check_in,))
        result = _result(CheckInMissingRule().evaluate(state, [_signal("EveningWindowStart")]))
        assert result.triggered is True
        assert result.direct_recommendation.context == RecommendationContext.EVENING_CHECK_IN
        assert result.evidence["has_morning_check_in"] is True

    def test_yesterdays_check_in_does_not_count(self):
        check_in = CheckInSnapshot(
            id="c-1", date=TODAY - timedelta(days=1), type=CheckInType.MORNING
        )
        state = _state(recent_check_ins=(check_in,))
        result = _result(CheckInMissingRule().evaluate(state, [_signal("MorningWindowStart")]))
        assert result.triggered is True

    def test_thirty_day_streak_is_critical(self):
        result = _result(
            CheckInMissingRule().evaluate(
                _state(check_in_streak=30), [_signal("MorningWindowStart")]
            )
        )
        assert result.severity == Severity.CRITICAL
        assert result.direct_recommendation.score == pytest.approx(0.90)

    def test_zero_streak_copy(self):
        result = _result(CheckInMissingRule().evaluate(_state(), [_signal("EveningWindowStart")]))
        assert result.direct_recommendation.title == "Time for your evening check-in"
        assert result.direct_recommendation.score == pytest.approx(0.50)

    @pytest.mark.parametrize(
        "streak,expected",
        [
            (0, Severity.LOW),
            (6, Severity.LOW),
            (7, Severity.MEDIUM),
            (13, Severity.MEDIUM),
            (14, Severity.HIGH),
            (29, Severity.HIGH),
            (30, Severity.CRITICAL),
        ],
    )
    def test_streak_severity_bands(self, streak, expected):
        assert streak_severity(streak) == expected

    def test_streak_score_caps(self):
        assert streak_score(14) == pytest.approx(0.71)
        assert streak_score(100) == pytest.approx(0.90)


class TestHabitAdherence:
    def test_no_struggling_habits(self):
        habit = HabitSnapshot(id="h-1", title="Read", adherence_7day=0.8)
        result = _result(HabitAdherenceThresholdRule().evaluate(_state(habits=(habit,)), []))
        assert result.triggered is False

    def test_inactive_habits_are_ignored(self):
        habit = HabitSnapshot(id="h-1", title="Read", adherence_7day=0.1, status=HabitStatus.PAUSED)
        result = _result(HabitAdherenceThresholdRule().evaluate(_state(habits=(habit,)), []))
        assert result.triggered is False

    def test_worst_habit_gets_scale_down_suggestion(self):
        habits = (
            HabitSnapshot(id="h-1", title="Read", adherence_7day=0.4),
            HabitSnapshot(id="h-2", title="Run", adherence_7day=0.2, current_streak=3),
            HabitSnapshot(id="h-3", title="Meditate", adherence_7day=0.9),
            HabitSnapshot(id="h-4", title="Journal", adherence_7day=1.0),
        )
        result = _result(HabitAdherenceThresholdRule().evaluate(_state(habits=habits), []))

        assert result.triggered is True
        assert result.severity == Severity.HIGH
        assert result.requires_escalation is False
        rec = result.direct_recommendation
        assert rec.target_entity_id == "h-2"
        assert rec.action_kind == ActionKind.UPDATE
        assert rec.action_payload == {"habitId": "h-2", "defaultMode": "minimum"}
        assert rec.score == pytest.approx(0.85)
        assert result.evidence["struggling_habit_count"] == 2
        assert result.evidence["percentage_struggling_habits"] == 50.0

    def test_minimum_mode_habit_with_streak_is_at_least_high(self):
        habit = HabitSnapshot(
            id="h-1",
            title="Stretch",
            adherence_7day=0.2,
            current_streak=10,
            current_mode=HabitMode.MINIMUM,
        )
        result = _result(HabitAdherenceThresholdRule().evaluate(_state(habits=(habit,)), []))

        assert result.severity.rank >= Severity.HIGH.rank
        rec = result.direct_recommendation
        assert rec.action_kind == ActionKind.REFLECT_PROMPT
        assert rec.action_payload is None
        assert rec.score == pytest.approx(0.95)

    def test_majority_struggling_requires_escalation(self):
        habits = (
            HabitSnapshot(id="h-1", title="Read", adherence_7day=0.4),
            HabitSnapshot(id="h-2", title="Run", adherence_7day=0.3),
            HabitSnapshot(id="h-3", title="Meditate", adherence_7day=0.9),
        )
        result = _result(HabitAdherenceThresholdRule().evaluate(_state(habits=habits), []))
        assert result.requires_escalation is True

    def test_high_priority_goal_link_boosts_severity(self):
        goal = GoalSnapshot(id="g-1", title="Marathon", priority=1)
        habit = HabitSnapshot(id="h-1", title="Run", adherence_7day=0.45, goal_ids=("g-1",))
        result = _result(
            HabitAdherenceThresholdRule().evaluate(_state(habits=(habit,), goals=(goal,)), [])
        )
        assert result.severity == Severity.HIGH
        assert result.evidence["linked_to_high_priority_goal"] is True

    @pytest.mark.parametrize(
        "adherence,streak,mode,linked,expected",
        [
            (0.2, 20, HabitMode.FULL, False, Severity.CRITICAL),
            (0.2, 0, HabitMode.FULL, False, Severity.HIGH),
            (0.4, 14, HabitMode.FULL, False, Severity.HIGH),
            (0.4, 7, HabitMode.FULL, False, Severity.MEDIUM),
            (0.4, 0, HabitMode.FULL, False, Severity.LOW),
            (0.4, 0, HabitMode.MINIMUM, False, Severity.HIGH),
            (0.4, 0, HabitMode.FULL, True, Severity.HIGH),
            (0.2, 20, HabitMode.MINIMUM, True, Severity.CRITICAL),
        ],
    )
    def test_adherence_severity(self, adherence, streak, mode, linked, expected):
        assert adherence_severity(adherence, streak, mode, linked) == expected


class TestDeadlineProximity:
    def test_no_deadlines(self):
        result = _result(DeadlineProximityRule().evaluate(_state(), []))
        assert result.triggered is False

    def test_overdue_task_is_critical(self):
        task = TaskSnapshot(id="t-1", title="File taxes", due_date=TODAY - timedelta(days=1))
        result = _result(DeadlineProximityRule().evaluate(_state(tasks=(task,)), []))

        assert result.triggered is True
        assert result.severity == Severity.CRITICAL
        rec = result.direct_recommendation
        assert rec.score == pytest.approx(0.98)
        assert rec.action_kind == ActionKind.EXECUTE_TODAY
        assert rec.action_payload == {"taskId": "t-1"}
        assert rec.title.startswith("Overdue:")
        assert result.evidence["most_urgent_is_overdue"] is True

    def test_task_due_in_two_days_is_high(self):
        task = TaskSnapshot(id="t-1", title="Slides", due_date=TODAY + timedelta(days=2))
        result = _result(DeadlineProximityRule().evaluate(_state(tasks=(task,)), []))
        assert result.severity == Severity.HIGH
        assert result.direct_recommendation.score == pytest.approx(0.95)
        assert result.evidence["most_urgent_hours_until"] == 48

    def test_completed_task_is_ignored(self):
        task = TaskSnapshot(
            id="t-1", title="Done", due_date=TODAY, status=TaskStatus.COMPLETED
        )
        result = _result(DeadlineProximityRule().evaluate(_state(tasks=(task,)), []))
        assert result.triggered is False

    def test_project_with_enough_progress_is_ignored(self):
        project = ProjectSnapshot(
            id="p-1",
            title="Launch",
            target_end_date=TODAY + timedelta(days=2),
            total_tasks=10,
            completed_tasks=6,
        )
        result = _result(DeadlineProximityRule().evaluate(_state(projects=(project,)), []))
        assert result.triggered is False

    def test_project_behind_schedule_has_no_payload(self):
        project = ProjectSnapshot(
            id="p-1",
            title="Launch",
            target_end_date=TODAY + timedelta(days=1),
            total_tasks=10,
            completed_tasks=5,
        )
        result = _result(DeadlineProximityRule().evaluate(_state(projects=(project,)), []))
        assert result.triggered is True
        assert result.severity == Severity.CRITICAL
        assert result.direct_recommendation.target_kind == TargetKind.PROJECT
        assert result.direct_recommendation.action_payload is None

    def test_goal_progress_uses_weighted_metrics(self):
        goal = GoalSnapshot(
            id="g-1",
            title="Save",
            deadline=TODAY + timedelta(days=2),
            metrics=(GoalMetricSnapshot(name="Saved", target_value=100, current_value=20),),
        )
        result = _result(DeadlineProximityRule().evaluate(_state(goals=(goal,)), []))
        assert result.triggered is True
        assert result.evidence["most_urgent_progress_pct"] == 20.0


class TestMetricObservation:
    def _metric(self, **kwargs) -> MetricDefinitionSnapshot:
        defaults = {
            "id": "m-1",
            "name": "Weight",
            "source_type": MetricSourceType.MANUAL,
            "default_cadence": MetricCadence.WEEKLY,
        }
        defaults.update(kwargs)
        return MetricDefinitionSnapshot(**defaults)

    def test_requires_trigger_signal(self):
        state = _state(metric_definitions=(self._metric(),))
        result = _result(MetricObservationOverdueRule().evaluate(state, [_signal("TaskCreatedEvent")]))
        assert result.triggered is False

    def test_never_observed_metric(self):
        state = _state(metric_definitions=(self._metric(),))
        result = _result(
            MetricObservationOverdueRule().evaluate(state, [_signal("MorningWindowStart")])
        )
        assert result.triggered is True
        assert result.severity == Severity.HIGH
        assert result.direct_recommendation.score == pytest.approx(0.65)
        assert result.direct_recommendation.title == 'Record your first "Weight" observation'
        assert result.evidence["never_observed"] is True

    def test_within_grace_is_not_overdue(self):
        metric = self._metric(last_observation_date=TODAY - timedelta(days=10))
        state = _state(metric_definitions=(metric,))
        result = _result(
            MetricObservationOverdueRule().evaluate(state, [_signal("MorningWindowStart")])
        )
        assert result.triggered is False

    def test_habit_sourced_metrics_are_skipped(self):
        metric = self._metric(source_type=MetricSourceType.HABIT)
        state = _state(metric_definitions=(metric,))
        result = _result(
            MetricObservationOverdueRule().evaluate(state, [_signal("MorningWindowStart")])
        )
        assert result.triggered is False

    def test_linked_priority_goal_wins_ordering(self):
        stale = self._metric(
            id="m-1", name="Steps", last_observation_date=TODAY - timedelta(days=40)
        )
        linked = self._metric(
            id="m-2", name="Weight", last_observation_date=TODAY - timedelta(days=12)
        )
        goal = GoalSnapshot(
            id="g-1",
            title="Get fit",
            priority=1,
            metrics=(GoalMetricSnapshot(metric_definition_id="m-2", name="Weight"),),
        )
        state = _state(metric_definitions=(stale, linked), goals=(goal,))
        result = _result(
            MetricObservationOverdueRule().evaluate(
                state, [_signal("MetricObservationRecordedEvent")]
            )
        )
        assert result.evidence["most_overdue_metric_id"] == "m-2"
        assert result.evidence["overdue_metric_count"] == 2
        assert result.evidence["days_overdue"] == 2
        assert result.severity == Severity.HIGH

    def test_severity_and_score_bands(self):
        assert overdue_severity(14, False, None) == Severity.CRITICAL
        assert overdue_severity(8, False, 1) == Severity.CRITICAL
        assert overdue_severity(1, False, 2) == Severity.HIGH
        assert overdue_severity(3, False, None) == Severity.MEDIUM
        assert overdue_severity(1, False, None) == Severity.LOW
        assert overdue_score(20, False, 1) == pytest.approx(0.90)
        assert overdue_score(7, False, 2) == pytest.approx(0.75)
        assert overdue_score(0, True, None) == pytest.approx(0.65)


class TestRecurringTaskStaleness:
    def test_requires_trigger_signal(self):
        task = TaskSnapshot(id="t-1", title="Weekly review", reschedule_count=4)
        result = _result(RecurringTaskStalenessRule().evaluate(_state(tasks=(task,)), []))
        assert result.triggered is False

    def test_chronic_task_prompts_reflection(self):
        task = TaskSnapshot(id="t-1", title="Clean garage", reschedule_count=6)
        result = _result(
            RecurringTaskStalenessRule().evaluate(
                _state(tasks=(task,)), [_signal("TaskRescheduledEvent")]
            )
        )
        assert result.severity == Severity.CRITICAL
        rec = result.direct_recommendation
        assert rec.action_kind == ActionKind.REFLECT_PROMPT
        assert rec.action_payload is None
        assert rec.score == pytest.approx(0.85)

    def test_routine_task_past_schedule(self):
        task = TaskSnapshot(
            id="t-1",
            title="Plan sprint",
            context_tags=("planning",),
            scheduled_date=TODAY - timedelta(days=2),
        )
        result = _result(
            RecurringTaskStalenessRule().evaluate(
                _state(tasks=(task,)), [_signal("MorningWindowStart")]
            )
        )
        assert result.triggered is True
        assert result.severity == Severity.MEDIUM
        rec = result.direct_recommendation
        assert rec.action_kind == ActionKind.EXECUTE_TODAY
        assert rec.action_payload == {"taskId": "t-1"}
        assert rec.score == pytest.approx(0.60)
        assert result.evidence["is_recurring_by_tag"] is True

    def test_one_off_task_needs_reschedules(self):
        task = TaskSnapshot(id="t-1", title="Buy gift", scheduled_date=TODAY - timedelta(days=5))
        result = _result(
            RecurringTaskStalenessRule().evaluate(
                _state(tasks=(task,)), [_signal("TaskUpdatedEvent")]
            )
        )
        assert result.triggered is False

    def test_bands(self):
        assert staleness_severity(5, 0, False) == Severity.CRITICAL
        assert staleness_severity(0, 7, True) == Severity.CRITICAL
        assert staleness_severity(3, 0, False) == Severity.HIGH
        assert staleness_severity(2, 0, False) == Severity.MEDIUM
        assert staleness_severity(0, 0, False) == Severity.LOW
        assert staleness_score(5, True) == pytest.approx(0.90)
        assert staleness_score(2, False) == pytest.approx(0.65)


class TestTaskEnergyMismatch:
    def _low_energy(self, level: int = 2) -> CheckInSnapshot:
        return CheckInSnapshot(id="c-1", date=TODAY, type=CheckInType.MORNING, energy_level=level)

    def test_no_morning_check_in(self):
        task = TaskSnapshot(id="t-1", title="Deep work", energy_cost=5, scheduled_date=TODAY)
        result = _result(TaskEnergyMismatchRule().evaluate(_state(tasks=(task,)), []))
        assert result.triggered is False

    def test_high_energy_day_is_fine(self):
        task = TaskSnapshot(id="t-1", title="Deep work", energy_cost=5, scheduled_date=TODAY)
        state = _state(tasks=(task,), recent_check_ins=(self._low_energy(4),))
        result = _result(TaskEnergyMismatchRule().evaluate(state, []))
        assert result.triggered is False

    def test_defers_heaviest_deferrable_task(self):
        tasks = (
            TaskSnapshot(
                id="t-1",
                title="Write report",
                energy_cost=5,
                est_minutes=180,
                priority=1,
                scheduled_date=TODAY,
            ),
            TaskSnapshot(
                id="t-2",
                title="Client pitch",
                energy_cost=5,
                est_minutes=120,
                priority=4,
                due_date=TODAY + timedelta(days=1),
                scheduled_date=TODAY,
            ),
            TaskSnapshot(id="t-3", title="Email", energy_cost=1, scheduled_date=TODAY),
        )
        state = _state(tasks=tasks, recent_check_ins=(self._low_energy(2),))
        result = _result(TaskEnergyMismatchRule().evaluate(state, []))

        assert result.triggered is True
        assert result.severity == Severity.HIGH
        rec = result.direct_recommendation
        assert rec.action_kind == ActionKind.DEFER
        assert rec.target_entity_id == "t-1"
        assert rec.score == pytest.approx(0.85)
        assert rec.action_payload == {
            "taskId": "t-1",
            "newDate": (TODAY + timedelta(days=1)).isoformat(),
            "reason": "Low reported energy (2/5)",
        }
        assert result.evidence["critical_deadline_count"] == 1
        assert result.evidence["total_high_energy_minutes"] == 300

    def test_only_critical_tasks_means_nothing_to_defer(self):
        task = TaskSnapshot(
            id="t-1",
            title="Client pitch",
            energy_cost=5,
            priority=4,
            due_date=TODAY,
            scheduled_date=TODAY,
        )
        state = _state(tasks=(task,), recent_check_ins=(self._low_energy(1),))
        result = _result(TaskEnergyMismatchRule().evaluate(state, []))
        assert result.triggered is False

    def test_negative_capacity_is_an_error(self):
        task = TaskSnapshot(id="t-1", title="Deep work", energy_cost=5, scheduled_date=TODAY)
        profile = ProfileSnapshot(constraints=ConstraintsSnapshot(max_planned_minutes_weekday=-60))
        state = _state(tasks=(task,), recent_check_ins=(self._low_energy(),), profile=profile)
        outcome = TaskEnergyMismatchRule().evaluate(state, [])
        assert isinstance(outcome, Err)
        assert "capacity" in outcome.reason

    def test_zero_capacity_is_an_error(self):
        task = TaskSnapshot(id="t-1", title="Deep work", energy_cost=5, scheduled_date=TODAY)
        profile = ProfileSnapshot(constraints=ConstraintsSnapshot(max_planned_minutes_weekday=0))
        state = _state(tasks=(task,), recent_check_ins=(self._low_energy(),), profile=profile)
        outcome = TaskEnergyMismatchRule().evaluate(state, [])
        assert isinstance(outcome, Err)
        assert "got 0" in outcome.reason

    def test_unset_capacity_uses_default(self):
        task = TaskSnapshot(id="t-1", title="Deep work", energy_cost=5, scheduled_date=TODAY)
        profile = ProfileSnapshot(constraints=ConstraintsSnapshot(max_planned_minutes_weekday=None))
        state = _state(tasks=(task,), recent_check_ins=(self._low_energy(),), profile=profile)
        result = _result(TaskEnergyMismatchRule().evaluate(state, []))
        assert result.triggered is True
        assert result.evidence["capacity_minutes"] == 480

    @pytest.mark.parametrize(
        "energy,burden,high_priority,expected",
        [
            (1, 0.6, False, Severity.CRITICAL),
            (1, 0.2, False, Severity.HIGH),
            (2, 0.6, True, Severity.HIGH),
            (2, 0.6, False, Severity.MEDIUM),
            (3, 0.6, False, Severity.MEDIUM),
            (3, 0.2, True, Severity.LOW),
        ],
    )
    def test_mismatch_severity(self, energy, burden, high_priority, expected):
        assert mismatch_severity(energy, burden, high_priority) == expected
