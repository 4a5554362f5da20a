"""How much a user's state has moved since the last full (Tier 2) assessment.

A baseline is a set of per-entity fingerprints recorded after a successful
Tier 2 run. The delta compares the current snapshot against it: new,
modified and newly completed entities, plus currently missed items and the
size of the signal batch. Without a baseline every entity counts as new.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json
from pydantic import BaseModel

from .models import HabitStatus, SignalEntry, StateSnapshot, TaskStatus

logger = logging.getLogger(__name__)

NEW_ENTITY_WEIGHT = 0.15
MODIFIED_ENTITY_WEIGHT = 0.10
COMPLETED_ITEM_WEIGHT = 0.05
MISSED_ITEM_WEIGHT = 0.20
NEW_SIGNAL_WEIGHT = 0.08

NEW_ENTITY_CAP = 0.30
MODIFIED_ENTITY_CAP = 0.20
COMPLETED_ITEM_CAP = 0.10
MISSED_ITEM_CAP = 0.40
NEW_SIGNAL_CAP = 0.25

MISSED_ADHERENCE_THRESHOLD = 0.5

# Fields that drift every day without the user touching the entity.
_VOLATILE_FIELDS: dict[str, set[str]] = {
    "habits": {"adherence_7day", "current_streak"},
    "goals": {"metrics"},
    "projects": {"completed_tasks"},
}

_TRACKED_COLLECTIONS = ("goals", "habits", "tasks", "projects", "experiments")


def fingerprint(entity: BaseModel, exclude: set[str] | None = None) -> str:
    payload = entity.model_dump(mode="json", exclude=exclude or None)
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class StateBaseline:
    fingerprints: dict[str, dict[str, str]]
    completed_task_ids: frozenset[str] = frozenset()
    recorded_at: datetime | None = None

    @classmethod
    def from_state(cls, state: StateSnapshot, recorded_at: datetime | None = None) -> "StateBaseline":
        fingerprints = {
            name: {
                entity.id: fingerprint(entity, _VOLATILE_FIELDS.get(name))
                for entity in getattr(state, name)
            }
            for name in _TRACKED_COLLECTIONS
        }
        completed = frozenset(t.id for t in state.tasks if t.status == TaskStatus.COMPLETED)
        return cls(fingerprints, completed, recorded_at or datetime.now(timezone.utc))

    def to_json(self) -> dict[str, Any]:
        return {
            "fingerprints": self.fingerprints,
            "completed_task_ids": sorted(self.completed_task_ids),
            "recorded_at": self.recorded_at.isoformat() if self.recorded_at else None,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "StateBaseline":
        recorded_at = data.get("recorded_at")
        return cls(
            fingerprints={k: dict(v) for k, v in (data.get("fingerprints") or {}).items()},
            completed_task_ids=frozenset(data.get("completed_task_ids") or ()),
            recorded_at=datetime.fromisoformat(recorded_at) if recorded_at else None,
        )


@dataclass(frozen=True)
class StateDeltaSummary:
    new_entities: int
    modified_entities: int
    completed_items: int
    missed_items: int
    new_signals: int
    score: float
    changes_by_type: dict[str, int] = field(default_factory=dict)
    baseline_recorded_at: datetime | None = None


class BaselineStore(Protocol):
    async def load(self, user_id: str) -> StateBaseline | None: ...

    async def save(self, user_id: str, baseline: StateBaseline) -> None: ...


class InMemoryBaselineStore:
    def __init__(self) -> None:
        self._baselines: dict[str, StateBaseline] = {}

    async def load(self, user_id: str) -> StateBaseline | None:
        return self._baselines.get(user_id)

    async def save(self, user_id: str, baseline: StateBaseline) -> None:
        self._baselines[user_id] = baseline


class PgBaselineStore:
    """Baselines in ``assessment_baselines`` (one JSONB row per user)."""

    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self.conn = conn

    async def load(self, user_id: str) -> StateBaseline | None:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                "SELECT baseline FROM assessment_baselines WHERE user_id = %s",
                (user_id,),
            )
            row = await cur.fetchone()
        if row is None:
            return None
        return StateBaseline.from_json(row["baseline"])

    async def save(self, user_id: str, baseline: StateBaseline) -> None:
        async with self.conn.cursor() as cur:
            await cur.execute(
                """
                INSERT INTO assessment_baselines (user_id, baseline, recorded_at)
                VALUES (%s, %s, NOW())
                ON CONFLICT (user_id) DO UPDATE SET
                    baseline = EXCLUDED.baseline,
                    recorded_at = NOW()
                """,
                (user_id, Json(baseline.to_json())),
            )


def count_missed(state: StateSnapshot) -> int:
    """Struggling active habits plus open tasks already past due."""
    habits = sum(
        1
        for h in state.habits
        if h.status == HabitStatus.ACTIVE and h.adherence_7day < MISSED_ADHERENCE_THRESHOLD
    )
    tasks = sum(
        1
        for t in state.tasks
        if t.is_open and t.due_date is not None and t.due_date < state.today
    )
    return habits + tasks


def delta_score(new: int, modified: int, completed: int, missed: int, signals: int) -> float:
    score = (
        min(new * NEW_ENTITY_WEIGHT, NEW_ENTITY_CAP)
        + min(modified * MODIFIED_ENTITY_WEIGHT, MODIFIED_ENTITY_CAP)
        + min(completed * COMPLETED_ITEM_WEIGHT, COMPLETED_ITEM_CAP)
        + min(missed * MISSED_ITEM_WEIGHT, MISSED_ITEM_CAP)
        + min(signals * NEW_SIGNAL_WEIGHT, NEW_SIGNAL_CAP)
    )
    return round(min(score, 1.0), 4)


class StateDeltaCalculator:
    def __init__(self, store: BaselineStore) -> None:
        self.store = store

    async def calculate(
        self,
        user_id: str,
        state: StateSnapshot,
        signals: Sequence[SignalEntry],
    ) -> StateDeltaSummary:
        baseline = await self.store.load(user_id)
        current = StateBaseline.from_state(state)

        new = 0
        modified = 0
        changes_by_type: dict[str, int] = {}
        for name in _TRACKED_COLLECTIONS:
            previous = baseline.fingerprints.get(name, {}) if baseline else {}
            added = 0
            changed = 0
            for entity_id, fp in current.fingerprints[name].items():
                old = previous.get(entity_id)
                if old is None:
                    added += 1
                elif old != fp:
                    changed += 1
            new += added
            modified += changed
            changes_by_type[name] = added + changed

        known_completed = baseline.completed_task_ids if baseline else frozenset()
        completed = len(current.completed_task_ids - known_completed)
        missed = count_missed(state)
        score = delta_score(new, modified, completed, missed, len(signals))

        logger.debug(
            "State delta for user %s: new=%d modified=%d completed=%d missed=%d signals=%d score=%.2f",
            user_id,
            new,
            modified,
            completed,
            missed,
            len(signals),
            score,
        )
        return StateDeltaSummary(
            new_entities=new,
            modified_entities=modified,
            completed_items=completed,
            missed_items=missed,
            new_signals=len(signals),
            score=score,
            changes_by_type=changes_by_type,
            baseline_recorded_at=baseline.recorded_at if baseline else None,
        )

    async def record_baseline(self, user_id: str, state: StateSnapshot) -> None:
        await self.store.save(user_id, StateBaseline.from_state(state))
        logger.debug("Recorded assessment baseline for user %s", user_id)
