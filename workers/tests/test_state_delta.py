"""Tests for state delta scoring and baseline persistence."""

from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from mastery_workers.models import (
    GoalSnapshot,
    HabitSnapshot,
    HabitStatus,
    SignalEntry,
    StateSnapshot,
    TaskSnapshot,
    TaskStatus,
)
from mastery_workers.state_delta import (
    InMemoryBaselineStore,
    PgBaselineStore,
    StateBaseline,
    StateDeltaCalculator,
    count_missed,
    delta_score,
    fingerprint,
)

TODAY = date(2026, 3, 10)


def _state(**kwargs) -> StateSnapshot:
    return StateSnapshot(user_id="u-1", today=TODAY, **kwargs)


def _signals(n: int) -> list[SignalEntry]:
    return [SignalEntry(id=i, user_id="u-1", event_type="TaskUpdatedEvent") for i in range(n)]


class _FakeCursor:
    def __init__(self, row=None):
        self.execute = AsyncMock()
        self.fetchone = AsyncMock(return_value=row)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


class TestDeltaScore:
    def test_zero(self):
        assert delta_score(0, 0, 0, 0, 0) == 0.0

    def test_components_are_capped(self):
        assert delta_score(10, 0, 0, 0, 0) == pytest.approx(0.30)
        assert delta_score(0, 10, 0, 0, 0) == pytest.approx(0.20)
        assert delta_score(0, 0, 10, 0, 0) == pytest.approx(0.10)
        assert delta_score(0, 0, 0, 10, 0) == pytest.approx(0.40)
        assert delta_score(0, 0, 0, 0, 10) == pytest.approx(0.25)

    def test_total_is_capped_at_one(self):
        assert delta_score(10, 10, 10, 10, 10) == 1.0

    def test_mixed(self):
        # 0.15 + 0.10 + 0.05 + 0.20 + 0.16
        assert delta_score(1, 1, 1, 1, 2) == pytest.approx(0.66)


def test_count_missed():
    state = _state(
        habits=(
            HabitSnapshot(id="h-1", title="Read", adherence_7day=0.3),
            HabitSnapshot(id="h-2", title="Run", adherence_7day=0.3, status=HabitStatus.PAUSED),
            HabitSnapshot(id="h-3", title="Walk", adherence_7day=0.5),
        ),
        tasks=(
            TaskSnapshot(id="t-1", title="Late", due_date=date(2026, 3, 9)),
            TaskSnapshot(id="t-2", title="Today", due_date=TODAY),
            TaskSnapshot(
                id="t-3", title="Done late", due_date=date(2026, 3, 1), status=TaskStatus.COMPLETED
            ),
        ),
    )
    assert count_missed(state) == 2


def test_fingerprint_ignores_excluded_fields():
    a = HabitSnapshot(id="h-1", title="Read", adherence_7day=0.3, current_streak=1)
    b = HabitSnapshot(id="h-1", title="Read", adherence_7day=0.9, current_streak=8)
    volatile = {"adherence_7day", "current_streak"}
    assert fingerprint(a, volatile) == fingerprint(b, volatile)
    assert fingerprint(a) != fingerprint(b)


def test_baseline_json_round_trip_keeps_fields():
    state = _state(
        goals=(GoalSnapshot(id="g-1", title="Ship"),),
        tasks=(TaskSnapshot(id="t-1", title="Done", status=TaskStatus.COMPLETED),),
    )
    recorded = datetime(2026, 3, 1, tzinfo=timezone.utc)
    baseline = StateBaseline.from_state(state, recorded_at=recorded)
    restored = StateBaseline.from_json(baseline.to_json())
    assert restored == baseline


class TestStateDeltaCalculator:
    @pytest.mark.asyncio
    async def test_without_baseline_everything_is_new(self):
        state = _state(
            goals=(GoalSnapshot(id="g-1", title="Ship"),),
            tasks=(TaskSnapshot(id="t-1", title="Write"),),
        )
        summary = await StateDeltaCalculator(InMemoryBaselineStore()).calculate(
            "u-1", state, _signals(1)
        )
        assert summary.new_entities == 2
        assert summary.modified_entities == 0
        assert summary.new_signals == 1
        assert summary.baseline_recorded_at is None
        assert summary.score == pytest.approx(0.30 + 0.08)

    @pytest.mark.asyncio
    async def test_unchanged_state_after_baseline_scores_zero(self):
        state = _state(habits=(HabitSnapshot(id="h-1", title="Read"),))
        calculator = StateDeltaCalculator(InMemoryBaselineStore())
        await calculator.record_baseline("u-1", state)

        summary = await calculator.calculate("u-1", state, [])
        assert summary.score == 0.0
        assert summary.baseline_recorded_at is not None

    @pytest.mark.asyncio
    async def test_detects_modified_new_and_completed(self):
        before = _state(
            tasks=(
                TaskSnapshot(id="t-1", title="Write"),
                TaskSnapshot(id="t-2", title="Edit"),
            ),
            habits=(HabitSnapshot(id="h-1", title="Read", adherence_7day=0.9),),
        )
        after = _state(
            tasks=(
                TaskSnapshot(id="t-1", title="Write", status=TaskStatus.COMPLETED),
                TaskSnapshot(id="t-2", title="Edit v2"),
                TaskSnapshot(id="t-3", title="Publish"),
            ),
            # Adherence drift alone is not a modification
            habits=(HabitSnapshot(id="h-1", title="Read", adherence_7day=0.8),),
        )
        calculator = StateDeltaCalculator(InMemoryBaselineStore())
        await calculator.record_baseline("u-1", before)

        summary = await calculator.calculate("u-1", after, [])
        assert summary.new_entities == 1
        assert summary.modified_entities == 2
        assert summary.completed_items == 1
        assert summary.changes_by_type["tasks"] == 3
        assert summary.changes_by_type["habits"] == 0

    @pytest.mark.asyncio
    async def test_deterministic_for_same_inputs(self):
        state = _state(tasks=(TaskSnapshot(id="t-1", title="Write", due_date=date(2026, 3, 1)),))
        calculator = StateDeltaCalculator(InMemoryBaselineStore())
        first = await calculator.calculate("u-1", state, _signals(2))
        second = await calculator.calculate("u-1", state, _signals(2))
        assert first == second


class TestPgBaselineStore:
    @pytest.mark.asyncio
    async def test_load_missing_returns_none(self):
        conn = MagicMock()
        conn.cursor = MagicMock(return_value=_FakeCursor(row=None))
        assert await PgBaselineStore(conn).load("u-1") is None

    @pytest.mark.asyncio
    async def test_load_parses_row(self):
        baseline = StateBaseline.from_state(
            _state(goals=(GoalSnapshot(id="g-1", title="Ship"),)),
            recorded_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        )
        conn = MagicMock()
        conn.cursor = MagicMock(return_value=_FakeCursor(row={"baseline": baseline.to_json()}))
        assert await PgBaselineStore(conn).load("u-1") == baseline

    @pytest.mark.asyncio
    async def test_save_upserts(self):
        cursor = _FakeCursor()
        conn = MagicMock()
        conn.cursor = MagicMock(return_value=cursor)
        await PgBaselineStore(conn).save("u-1", StateBaseline.from_state(_state()))

        sql, params = cursor.execute.call_args[0]
        assert "ON CONFLICT (user_id) DO UPDATE" in sql
        assert params[0] == "u-1"
