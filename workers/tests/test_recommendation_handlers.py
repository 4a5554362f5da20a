"""Tests for the recommendation job handlers."""

from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mastery_workers.assessment import (
    AgentRun,
    AssessmentTier,
    PolicyEnforcementResult,
    RuleEvaluationResult,
    TieredAssessmentOutcome,
    TieredAssessmentStatistics,
)
from mastery_workers.config import Config
from mastery_workers.handlers import recommendations as handlers
from mastery_workers.handlers.recommendations import (
    _batch_processed,
    _claim_batch,
    _load_signals,
    _load_state,
    handle_recommendation_assess,
    handle_recommendation_execute,
)

NOW = datetime(2026, 3, 10, 7, 0, tzinfo=timezone.utc)
CONFIG = Config(database_url="postgresql://localhost/mastery", recommendation_ttl_hours=12)
MODULE = "mastery_workers.handlers.recommendations"


class _FakeCursor:
    def __init__(self, fetchone=None, fetchall=None, rowcount=0):
        self.execute = AsyncMock()
        self.executemany = AsyncMock()
        self.fetchone = AsyncMock(return_value=fetchone)
        self.fetchall = AsyncMock(return_value=fetchall or [])
        self.rowcount = rowcount

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


def _conn(*cursors):
    conn = MagicMock()
    conn.execute = AsyncMock()
    conn.cursor = MagicMock(side_effect=list(cursors))
    return conn


class _FakeTransaction:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        self.conn.open_transactions += 1
        self.conn.transactions.append("begin")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.conn.open_transactions -= 1
        self.conn.transactions.append("end")
        return False


def _tx_conn():
    conn = MagicMock()
    conn.open_transactions = 0
    conn.transactions = []
    conn.transaction = MagicMock(side_effect=lambda: _FakeTransaction(conn))
    return conn


def _outcome(final_tier=AssessmentTier.TIER0_ONLY, agent_runs=()):
    return TieredAssessmentOutcome(
        user_id="u-1",
        processed_signals=(),
        tier0_result=RuleEvaluationResult(
            all_results=(), direct_recommendations=(), should_escalate_to_tier1=False
        ),
        tier1_result=None,
        tier2_executed=final_tier == AssessmentTier.TIER2_EXECUTED,
        final_tier=final_tier,
        generated_recommendations=(),
        policy_result=PolicyEnforcementResult(approved_recommendations=()),
        statistics=TieredAssessmentStatistics(
            tier0_rules_evaluated=6,
            tier0_rules_triggered=0,
            tier0_direct_recommendations=0,
            tier1_combined_score=None,
            tier1_relevant_context_items=0,
            tier2_llm_calls_made=len(agent_runs),
            policy_rejections=0,
            duration_ms=3,
        ),
        started_at=NOW,
        completed_at=NOW,
        agent_runs=tuple(agent_runs),
    )


def _agent_run(stage: str, success: bool) -> AgentRun:
    return AgentRun(
        id=f"run-{stage}",
        user_id="u-1",
        stage=stage,
        model="gpt-5-mini",
        provider="openai",
        success=success,
        input_tokens=10,
        output_tokens=5,
        cached_input_tokens=0,
        reasoning_tokens=0,
        latency_ms=12,
        started_at=NOW,
        completed_at=NOW,
    )


def _recommendation_row(status="accepted", **overrides):
    row = {
        "id": "rec-1",
        "user_id": "u-1",
        "type": "habit_mode_suggestion",
        "context": "drift_alert",
        "target_kind": "habit",
        "target_entity_id": "h-1",
        "target_entity_title": "Stretch",
        "action_kind": "update",
        "title": "Scale down",
        "rationale": "Adherence dropped",
        "score": 0.85,
        "action_payload": {"habitId": "h-1", "defaultMode": "minimum"},
        "action_summary": "Minimum mode",
        "signal_ids": [1, 2],
        "status": status,
        "created_at": NOW,
        "expires_at": NOW,
    }
    row.update(overrides)
    return row


class TestQueries:
    @pytest.mark.asyncio
    async def test_claim_batch(self):
        assert await _claim_batch(_conn(_FakeCursor(fetchone=("b-1",))), "u-1", "b-1") is True
        assert await _claim_batch(_conn(_FakeCursor(fetchone=None)), "u-1", "b-1") is False

    @pytest.mark.asyncio
    async def test_load_state(self):
        cursor = _FakeCursor(fetchone={"snapshot": {"today": "2026-03-10", "check_in_streak": 3}})
        state = await _load_state(_conn(cursor), "u-1")
        assert state.user_id == "u-1"
        assert state.today == date(2026, 3, 10)
        assert state.check_in_streak == 3

        assert await _load_state(_conn(_FakeCursor(fetchone=None)), "u-1") is None

    @pytest.mark.asyncio
    async def test_load_signals(self):
        rows = [
            {
                "id": 4,
                "user_id": "u-1",
                "event_type": "CheckInSubmittedEvent",
                "priority": "urgent",
                "window_type": "immediate",
                "target_entity_type": "task",
                "target_entity_id": 77,
                "scheduled_window_start": None,
                "created_at": NOW,
                "event_data": None,
            }
        ]
        cursor = _FakeCursor(fetchall=rows)
        (signal,) = await _load_signals(_conn(cursor), "u-1", [4])
        assert signal.id == 4
        assert signal.target_entity_id == "77"
        assert signal.event_data == {}
        assert cursor.execute.call_args[0][1] == ("u-1", [4])

    @pytest.mark.asyncio
    async def test_load_signals_without_ids(self):
        conn = _conn()
        assert await _load_signals(conn, "u-1", []) == []
        conn.cursor.assert_not_called()


class TestAssessHandler:
    @pytest.mark.asyncio
    async def test_missing_keys_raise(self):
        with pytest.raises(ValueError, match="user_id and batch_id"):
            await handle_recommendation_assess(MagicMock(), {"user_id": "u-1"})

    @pytest.mark.asyncio
    async def test_processed_batch_is_skipped(self):
        conn = _tx_conn()
        with (
            patch(f"{MODULE}._acquire_user_lock", AsyncMock()) as lock,
            patch(f"{MODULE}._batch_processed", AsyncMock(return_value=True)),
            patch(f"{MODULE}._load_state", AsyncMock()) as load_state,
        ):
            await handle_recommendation_assess(conn, {"user_id": "u-1", "batch_id": "b-1"})

        lock.assert_awaited_once()
        load_state.assert_not_called()
        assert conn.transactions == ["begin", "end"]

    @pytest.mark.asyncio
    async def test_missing_state_is_skipped(self):
        with (
            patch(f"{MODULE}._acquire_user_lock", AsyncMock()),
            patch(f"{MODULE}._batch_processed", AsyncMock(return_value=False)),
            patch(f"{MODULE}._load_state", AsyncMock(return_value=None)),
            patch(f"{MODULE}._claim_batch", AsyncMock()) as claim,
            patch(f"{MODULE}.build_tiered_engine") as build,
        ):
            await handle_recommendation_assess(_tx_conn(), {"user_id": "u-1", "batch_id": "b-1"})

        build.assert_not_called()
        claim.assert_not_called()

    @pytest.mark.asyncio
    async def test_full_run_persists_everything(self):
        outcome = _outcome(
            AssessmentTier.TIER2_EXECUTED,
            agent_runs=[_agent_run("assessment", True), _agent_run("selection", False)],
        )
        engine = MagicMock()
        engine.assess = AsyncMock(return_value=outcome)
        conn = _tx_conn()

        with (
            patch(f"{MODULE}._get_config", return_value=CONFIG),
            patch(f"{MODULE}._acquire_user_lock", AsyncMock()) as lock,
            patch(f"{MODULE}._batch_processed", AsyncMock(return_value=False)),
            patch(f"{MODULE}._claim_batch", AsyncMock(return_value=True)) as claim,
            patch(f"{MODULE}._load_state", AsyncMock(return_value=MagicMock())),
            patch(f"{MODULE}._load_signals", AsyncMock(return_value=[])) as load_signals,
            patch(f"{MODULE}.build_tiered_engine", return_value=engine),
            patch(f"{MODULE}._persist_outcome", AsyncMock(return_value="o-1")),
            patch(f"{MODULE}._persist_recommendations", AsyncMock()) as persist_recs,
            patch(f"{MODULE}.safe_record_agent_runs", AsyncMock(return_value=2)) as telemetry,
            patch(f"{MODULE}._expire_stale_recommendations", AsyncMock(return_value=1)) as expire,
            patch(f"{MODULE}._mark_signals_processed", AsyncMock()),
            patch(f"{MODULE}.record_tier_exit") as tier_exit,
            patch(f"{MODULE}.record_llm_call") as llm_call,
        ):
            await handle_recommendation_assess(
                conn, {"user_id": "u-1", "batch_id": "b-1", "signal_ids": ["3", 5]}
            )

        assert lock.await_count == 2
        claim.assert_awaited_once_with(conn, "u-1", "b-1")
        load_signals.assert_awaited_once_with(conn, "u-1", [3, 5])
        persist_recs.assert_awaited_once_with(conn, ())
        telemetry.assert_awaited_once_with(conn, outcome.agent_runs, outcome_id="o-1")
        expire.assert_awaited_once_with(conn, "u-1", 12)
        tier_exit.assert_called_once_with("tier2_executed")
        assert [c.args for c in llm_call.call_args_list] == [
            ("assessment", True),
            ("selection", False),
        ]

    @pytest.mark.asyncio
    async def test_engine_runs_with_no_transaction_open(self):
        conn = _tx_conn()
        seen = []

        async def assess(state, signals):
            seen.append(conn.open_transactions)
            return _outcome()

        engine = MagicMock()
        engine.assess = assess

        with (
            patch(f"{MODULE}._get_config", return_value=CONFIG),
            patch(f"{MODULE}._acquire_user_lock", AsyncMock()),
            patch(f"{MODULE}._batch_processed", AsyncMock(return_value=False)),
            patch(f"{MODULE}._claim_batch", AsyncMock(return_value=True)),
            patch(f"{MODULE}._load_state", AsyncMock(return_value=MagicMock())),
            patch(f"{MODULE}._load_signals", AsyncMock(return_value=[])),
            patch(f"{MODULE}.build_tiered_engine", return_value=engine),
            patch(f"{MODULE}._persist_outcome", AsyncMock(return_value="o-1")),
            patch(f"{MODULE}._persist_recommendations", AsyncMock()),
            patch(f"{MODULE}.safe_record_agent_runs", AsyncMock(return_value=0)),
            patch(f"{MODULE}._expire_stale_recommendations", AsyncMock(return_value=0)),
            patch(f"{MODULE}._mark_signals_processed", AsyncMock()),
        ):
            await handle_recommendation_assess(conn, {"user_id": "u-1", "batch_id": "b-1"})

        assert seen == [0]
        assert conn.transactions == ["begin", "end", "begin", "end"]

    @pytest.mark.asyncio
    async def test_outcome_discarded_when_batch_claimed_meanwhile(self):
        engine = MagicMock()
        engine.assess = AsyncMock(return_value=_outcome())

        with (
            patch(f"{MODULE}._get_config", return_value=CONFIG),
            patch(f"{MODULE}._acquire_user_lock", AsyncMock()),
            patch(f"{MODULE}._batch_processed", AsyncMock(return_value=False)),
            patch(f"{MODULE}._claim_batch", AsyncMock(return_value=False)),
            patch(f"{MODULE}._load_state", AsyncMock(return_value=MagicMock())),
            patch(f"{MODULE}._load_signals", AsyncMock(return_value=[])),
            patch(f"{MODULE}.build_tiered_engine", return_value=engine),
            patch(f"{MODULE}._persist_outcome", AsyncMock()) as persist_outcome,
            patch(f"{MODULE}._mark_signals_processed", AsyncMock()) as mark,
            patch(f"{MODULE}.record_tier_exit") as tier_exit,
        ):
            await handle_recommendation_assess(_tx_conn(), {"user_id": "u-1", "batch_id": "b-1"})

        engine.assess.assert_awaited_once()
        persist_outcome.assert_not_called()
        mark.assert_not_called()
        tier_exit.assert_not_called()

    @pytest.mark.asyncio
    async def test_batch_processed_query(self):
        cursor = _FakeCursor(fetchone=(1,))
        assert await _batch_processed(_conn(cursor), "b-1") is True
        assert cursor.execute.call_args[0][1] == ("b-1",)
        assert await _batch_processed(_conn(_FakeCursor(fetchone=None)), "b-1") is False


class TestExecuteHandler:
    @pytest.mark.asyncio
    async def test_missing_id_raises(self):
        with pytest.raises(ValueError, match="recommendation_id"):
            await handle_recommendation_execute(MagicMock(), {})

    @pytest.mark.asyncio
    async def test_unknown_recommendation(self):
        conn = _conn(_FakeCursor(fetchone=None))
        await handle_recommendation_execute(conn, {"recommendation_id": "rec-1"})
        conn.execute.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["executed", "rejected", "expired"])
    async def test_terminal_status_is_left_alone(self, status):
        conn = _conn(_FakeCursor(fetchone=_recommendation_row(status=status)))
        await handle_recommendation_execute(conn, {"recommendation_id": "rec-1"})
        conn.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_accepted_recommendation_is_dispatched(self):
        select_cursor = _FakeCursor(fetchone=_recommendation_row())
        bus_cursor = _FakeCursor()
        conn = _conn(select_cursor, bus_cursor)

        await handle_recommendation_execute(conn, {"recommendation_id": "rec-1"})

        job_sql, job_params = bus_cursor.execute.call_args[0]
        assert "INSERT INTO background_jobs" in job_sql
        assert job_params[2].obj["command_type"] == "habit.update"
        assert job_params[2].obj["default_mode"] == "minimum"

        update_sql, update_params = conn.execute.call_args[0]
        assert "SET status = 'executed'" in update_sql
        assert update_params == ("h-1", "rec-1")

    @pytest.mark.asyncio
    async def test_reflect_prompt_is_marked_executed_without_command(self):
        row = _recommendation_row(
            action_kind="reflect_prompt", target_kind="user_profile", action_payload=None
        )
        conn = _conn(_FakeCursor(fetchone=row))

        await handle_recommendation_execute(conn, {"recommendation_id": "rec-1"})

        assert conn.cursor.call_count == 1
        assert conn.execute.call_args[0][1] == (None, "rec-1")


def test_config_is_cached(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/mastery")
    handlers._get_config.cache_clear()
    try:
        assert handlers._get_config() is handlers._get_config()
    finally:
        handlers._get_config.cache_clear()
