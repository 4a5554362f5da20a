"""Recommendation jobs.

recommendation.assess   run the tiered pipeline for one signal batch
recommendation.execute  dispatch an accepted recommendation as a domain command

Assessment runs in three steps on an autocommit connection. Under a per-user
advisory lock the batch is checked and state and signals are loaded, then
that transaction commits. The tiered engine runs with no transaction open,
so model calls never hold the lock or a connection in a transaction. The
results are persisted in a second locked transaction that also claims the
batch id in processed_signal_batches. When a concurrent or retried run
claimed the batch first, this run's outcome is discarded, so a batch never
produces a second set of recommendations.
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from ..action_dispatcher import ActionDispatcher
from ..agent_telemetry import safe_record_agent_runs
from ..assessment import Recommendation, RecommendationTarget, TieredAssessmentOutcome
from ..commands import JobQueueCommandBus
from ..config import Config
from ..metrics import record_llm_call, record_tier_exit
from ..models import (
    ActionKind,
    RecommendationContext,
    RecommendationType,
    SignalEntry,
    StateSnapshot,
    TargetKind,
)
from ..registry import register
from ..tiered_engine import build_tiered_engine

logger = logging.getLogger(__name__)

EXECUTABLE_STATUSES = ("pending", "accepted")


@lru_cache(maxsize=1)
def _get_config() -> Config:
    return Config.from_env()


async def _acquire_user_lock(
    conn: psycopg.AsyncConnection[Any], user_id: str
) -> None:
    """Serialize all assessment work for the same user."""
    await conn.execute(
        "SELECT pg_advisory_xact_lock(hashtext(%s)::bigint)",
        (f"assess:{user_id}",),
    )


async def _batch_processed(conn: psycopg.AsyncConnection[Any], batch_id: str) -> bool:
    async with conn.cursor() as cur:
        await cur.execute(
            "SELECT 1 FROM processed_signal_batches WHERE batch_id = %s",
            (batch_id,),
        )
        return await cur.fetchone() is not None


async def _claim_batch(
    conn: psycopg.AsyncConnection[Any], user_id: str, batch_id: str
) -> bool:
    """Return False when the batch was already processed."""
    async with conn.cursor() as cur:
        await cur.execute(
            """
            INSERT INTO processed_signal_batches (batch_id, user_id, processed_at)
            VALUES (%s, %s, NOW())
            ON CONFLICT (batch_id) DO NOTHING
            RETURNING batch_id
            """,
            (batch_id, user_id),
        )
        return await cur.fetchone() is not None


async def _load_state(
    conn: psycopg.AsyncConnection[Any], user_id: str
) -> StateSnapshot | None:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT snapshot
            FROM user_state_snapshots
            WHERE user_id = %s
            ORDER BY assembled_at DESC
            LIMIT 1
            """,
            (user_id,),
        )
        row = await cur.fetchone()
    if row is None:
        return None
    return StateSnapshot.model_validate({**row["snapshot"], "user_id": user_id})


async def _load_signals(
    conn: psycopg.AsyncConnection[Any], user_id: str, signal_ids: Sequence[int]
) -> list[SignalEntry]:
    if not signal_ids:
        return []
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT id, user_id, event_type, priority, window_type,
                   target_entity_type, target_entity_id,
                   scheduled_window_start, created_at, event_data
            FROM signal_entries
            WHERE user_id = %s AND id = ANY(%s) AND processed_at IS NULL
            ORDER BY id
            """,
            (user_id, list(signal_ids)),
        )
        rows = await cur.fetchall()
    return [
        SignalEntry.model_validate(
            {
                **row,
                "user_id": str(row["user_id"]),
                "target_entity_id": (
                    str(row["target_entity_id"]) if row["target_entity_id"] else None
                ),
                "event_data": row["event_data"] or {},
            }
        )
        for row in rows
    ]


async def _persist_outcome(
    conn: psycopg.AsyncConnection[Any],
    outcome: TieredAssessmentOutcome,
    batch_id: str,
) -> str:
    async with conn.cursor() as cur:
        await cur.execute(
            """
            INSERT INTO tiered_assessment_outcomes (
                user_id, batch_id, final_tier, tier2_executed, selection_method,
                summary, started_at, completed_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                outcome.user_id,
                batch_id,
                outcome.final_tier.value,
                outcome.tier2_executed,
                outcome.selection_method,
                Json(outcome.summary()),
                outcome.started_at,
                outcome.completed_at,
            ),
        )
        row = await cur.fetchone()
    return str(row[0])


async def _persist_recommendations(
    conn: psycopg.AsyncConnection[Any],
    recommendations: Sequence[Recommendation],
) -> None:
    if not recommendations:
        return
    async with conn.cursor() as cur:
        await cur.executemany(
            """
            INSERT INTO recommendations (
                id, user_id, type, context, target_kind, target_entity_id,
                target_entity_title, action_kind, title, rationale, score,
                action_payload, action_summary, signal_ids, status,
                created_at, expires_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            [
                (
                    r.id,
                    r.user_id,
                    r.type.value,
                    r.context.value,
                    r.target.kind.value,
                    r.target.entity_id,
                    r.target.entity_title,
                    r.action_kind.value,
                    r.title,
                    r.rationale,
                    r.score,
                    Json(r.action_payload) if r.action_payload is not None else None,
                    r.action_summary,
                    list(r.signal_ids),
                    r.status,
                    r.created_at,
                    r.expires_at,
                )
                for r in recommendations
            ],
        )


async def _expire_stale_recommendations(
    conn: psycopg.AsyncConnection[Any], user_id: str, ttl_hours: int
) -> int:
    async with conn.cursor() as cur:
        await cur.execute(
            """
            UPDATE recommendations
            SET status = 'expired'
            WHERE user_id = %s
              AND status = 'pending'
              AND created_at < NOW() - make_interval(hours => %s)
            """,
            (user_id, ttl_hours),
        )
        return cur.rowcount


async def _mark_signals_processed(
    conn: psycopg.AsyncConnection[Any], user_id: str, signal_ids: Sequence[int]
) -> None:
    if not signal_ids:
        return
    await conn.execute(
        """
        UPDATE signal_entries
        SET processed_at = NOW()
        WHERE user_id = %s AND id = ANY(%s)
        """,
        (user_id, list(signal_ids)),
    )


@register("recommendation.assess", owns_transaction=True)
async def handle_recommendation_assess(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    user_id = payload.get("user_id")
    batch_id = payload.get("batch_id")
    if not user_id or not batch_id:
        raise ValueError(
            f"recommendation.assess needs user_id and batch_id (got user_id={user_id!r}, "
            f"batch_id={batch_id!r})"
        )
    user_id = str(user_id)
    batch_id = str(batch_id)
    signal_ids = [int(i) for i in payload.get("signal_ids") or []]

    async with conn.transaction():
        await _acquire_user_lock(conn, user_id)
        if await _batch_processed(conn, batch_id):
            logger.info("Batch %s for user %s already processed, skipping", batch_id, user_id)
            return
        state = await _load_state(conn, user_id)
        if state is None:
            logger.warning("No state snapshot for user %s, skipping batch %s", user_id, batch_id)
            return
        signals = await _load_signals(conn, user_id, signal_ids)

    config = _get_config()
    engine = build_tiered_engine(conn, config)
    outcome = await engine.assess(state, signals)

    async with conn.transaction():
        await _acquire_user_lock(conn, user_id)
        if not await _claim_batch(conn, user_id, batch_id):
            logger.info(
                "Batch %s for user %s was persisted by another run, discarding outcome",
                batch_id,
                user_id,
            )
            return
        outcome_id = await _persist_outcome(conn, outcome, batch_id)
        await _persist_recommendations(conn, outcome.generated_recommendations)
        await safe_record_agent_runs(conn, outcome.agent_runs, outcome_id=outcome_id)
        expired = await _expire_stale_recommendations(
            conn, user_id, config.recommendation_ttl_hours
        )
        await _mark_signals_processed(conn, user_id, [s.id for s in signals])

    record_tier_exit(outcome.final_tier.value)
    for run in outcome.agent_runs:
        record_llm_call(run.stage, run.success)

    logger.info(
        "Assessed batch %s for user %s: tier=%s recommendations=%d rejected=%d expired=%d",
        batch_id,
        user_id,
        outcome.final_tier.value,
        len(outcome.generated_recommendations),
        outcome.statistics.policy_rejections,
        expired,
        extra={
            "mastery_user_id": user_id,
            "mastery_tier": outcome.final_tier.value,
            "mastery_duration_ms": outcome.statistics.duration_ms,
        },
    )


def _row_to_recommendation(row: dict[str, Any]) -> Recommendation:
    return Recommendation(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        type=RecommendationType(row["type"]),
        context=RecommendationContext(row["context"]),
        target=RecommendationTarget(
            kind=TargetKind(row["target_kind"]),
            entity_id=str(row["target_entity_id"]) if row["target_entity_id"] else None,
            entity_title=row["target_entity_title"],
        ),
        action_kind=ActionKind(row["action_kind"]),
        title=row["title"],
        rationale=row["rationale"],
        score=float(row["score"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        action_payload=row["action_payload"],
        action_summary=row["action_summary"],
        signal_ids=tuple(row["signal_ids"] or ()),
        status=row["status"],
    )


@register("recommendation.execute")
async def handle_recommendation_execute(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    recommendation_id = payload.get("recommendation_id")
    if not recommendation_id:
        raise ValueError("recommendation.execute needs recommendation_id")

    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT id, user_id, type, context, target_kind, target_entity_id,
                   target_entity_title, action_kind, title, rationale, score,
                   action_payload, action_summary, signal_ids, status,
                   created_at, expires_at
            FROM recommendations
            WHERE id = %s
            FOR UPDATE
            """,
            (recommendation_id,),
        )
        row = await cur.fetchone()

    if row is None:
        logger.warning("Recommendation %s not found, nothing to execute", recommendation_id)
        return
    if row["status"] not in EXECUTABLE_STATUSES:
        logger.info(
            "Recommendation %s has status %s, not executing", recommendation_id, row["status"]
        )
        return

    recommendation = _row_to_recommendation(row)
    dispatcher = ActionDispatcher(
        JobQueueCommandBus(conn),
        today=lambda: datetime.now(timezone.utc).date(),
    )
    entity_id = await dispatcher.execute(recommendation)

    await conn.execute(
        """
        UPDATE recommendations
        SET status = 'executed', executed_entity_id = %s, executed_at = NOW()
        WHERE id = %s
        """,
        (entity_id, recommendation.id),
    )
