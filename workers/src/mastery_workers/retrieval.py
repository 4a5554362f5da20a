"""Similarity retrieval over a user's embedded history (RAG).

Each Tier 2 stage gets its own query, built from cues in the state or the
stage 1 assessment, and its own entity-type scope. Retrieval is strictly
best effort: a timeout or backend failure yields ``None`` and the stage
runs without history. Cancellation from the caller always propagates.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Protocol

import psycopg
from psycopg.rows import dict_row

from .assessment import RelevantContextItem
from .embeddings import EmbeddingProvider, cosine_similarity
from .models import RecommendationContext, StateSnapshot
from .schemas import SituationalAssessment

logger = logging.getLogger(__name__)

ASSESSMENT_TOP_K = 7
ASSESSMENT_ENTITY_TYPES = ("check_in", "experiment", "recommendation", "goal")
SELECTION_TOP_K = 8
SELECTION_ENTITY_TYPES = ("recommendation", "experiment")

_HUMANIZED_CONTEXT = {
    RecommendationContext.MORNING_CHECK_IN: "morning check-in planning today",
    RecommendationContext.EVENING_CHECK_IN: "evening reflection review",
    RecommendationContext.WEEKLY_REVIEW: "weekly review trends patterns",
    RecommendationContext.DRIFT_ALERT: "drift deviation off-track",
    RecommendationContext.MIDDAY: "midday adjustment",
    RecommendationContext.ONBOARDING: "onboarding setup new user",
    RecommendationContext.PROACTIVE_CHECK: "proactive assessment improvement",
}


def humanize_context(context: RecommendationContext) -> str:
    return _HUMANIZED_CONTEXT.get(context, "general assessment")


@dataclass(frozen=True)
class RagContext:
    stage: str
    items: tuple[RelevantContextItem, ...]
    query_text: str
    latency_ms: int = 0


class VectorStore(Protocol):
    async def search(
        self,
        user_id: str,
        vector: Sequence[float],
        top_k: int,
        entity_types: Sequence[str] | None = None,
    ) -> list[RelevantContextItem]: ...


def _rank(
    rows: Sequence[tuple[RelevantContextItem, Sequence[float]]],
    vector: Sequence[float],
    top_k: int,
) -> list[RelevantContextItem]:
    scored = [
        (cosine_similarity(vector, embedding), item)
        for item, embedding in rows
    ]
    scored.sort(key=lambda pair: (-pair[0], pair[1].entity_type, pair[1].entity_id))
    return [
        RelevantContextItem(
            entity_type=item.entity_type,
            entity_id=item.entity_id,
            title=item.title,
            status=item.status,
            text=item.text,
            similarity=round(score, 4),
        )
        for score, item in scored[:top_k]
    ]


class InMemoryVectorStore:
    def __init__(self) -> None:
        self._docs: dict[str, list[tuple[RelevantContextItem, list[float]]]] = {}

    def add(self, user_id: str, item: RelevantContextItem, embedding: list[float]) -> None:
        self._docs.setdefault(user_id, []).append((item, embedding))

    async def search(
        self,
        user_id: str,
        vector: Sequence[float],
        top_k: int,
        entity_types: Sequence[str] | None = None,
    ) -> list[RelevantContextItem]:
        rows = [
            (item, emb)
            for item, emb in self._docs.get(user_id, [])
            if entity_types is None or item.entity_type in entity_types
        ]
        return _rank(rows, vector, top_k)


class PgVectorStore:
    """Loads ``embedding_documents`` for one user and ranks in process."""

    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self.conn = conn

    async def search(
        self,
        user_id: str,
        vector: Sequence[float],
        top_k: int,
        entity_types: Sequence[str] | None = None,
    ) -> list[RelevantContextItem]:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            if entity_types:
                await cur.execute(
                    """
                    SELECT entity_type, entity_id, title, status, embedding_text, embedding
                    FROM embedding_documents
                    WHERE user_id = %s AND entity_type = ANY(%s)
                    """,
                    (user_id, list(entity_types)),
                )
            else:
                await cur.execute(
                    """
                    SELECT entity_type, entity_id, title, status, embedding_text, embedding
                    FROM embedding_documents
                    WHERE user_id = %s
                    """,
                    (user_id,),
                )
            rows = await cur.fetchall()

        candidates = []
        for row in rows:
            embedding = row["embedding"]
            if not isinstance(embedding, list):
                continue
            item = RelevantContextItem(
                entity_type=row["entity_type"],
                entity_id=str(row["entity_id"]),
                title=row["title"] or "",
                status=row["status"],
                text=row["embedding_text"] or "",
                similarity=0.0,
            )
            candidates.append((item, [float(v) for v in embedding]))
        return _rank(candidates, vector, top_k)


def truncate_text(text: str, max_length: int) -> str:
    """Cut at a word boundary when one falls in the last 30%."""
    if not text or len(text) <= max_length:
        return text
    truncated = text[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length * 0.7:
        return truncated[:last_space] + "..."
    return truncated + "..."


def build_assessment_query(state: StateSnapshot, context: RecommendationContext) -> str:
    parts = [humanize_context(context)]

    recent = sorted(state.recent_check_ins, key=lambda c: c.date, reverse=True)[:3]
    if any(c.date > state.today - timedelta(days=3) for c in recent):
        parts.append("recent current this week")
    energies = [c.energy_level for c in recent if c.energy_level is not None]
    if energies:
        avg = sum(energies) / len(energies)
        if avg < 2.5:
            parts.append("low energy fatigue tired depleted burnout")
        elif avg > 3.5:
            parts.append("high energy motivated productive momentum")
        else:
            parts.append("moderate energy stable balanced")

    minutes = sum(t.est_minutes or 0 for t in state.tasks if t.scheduled_date == state.today)
    if minutes > 360:
        parts.append("overloaded heavy workload capacity overwhelmed")
    elif minutes < 60:
        parts.append("light day available capacity underutilized")

    struggling = [h for h in state.habits if h.adherence_7day < 0.5]
    if struggling:
        parts.append("habit adherence struggle slipping")
        parts.extend(h.title for h in struggling[:2])
    if any(h.adherence_7day >= 0.8 for h in state.habits):
        parts.append("consistent streak working")

    parts.extend([g.title for g in state.goals if g.is_active][:3])

    if state.check_in_streak == 0:
        parts.append("check-in gap missed")
    elif state.check_in_streak >= 7:
        parts.append("consistent check-in routine")
    return " ".join(p for p in parts if p).strip()


def build_selection_query(
    assessment: SituationalAssessment, context: RecommendationContext
) -> str:
    parts = [
        humanize_context(context),
        assessment.capacity_status,
        f"{assessment.overall_momentum} momentum",
        "successful accepted effective what worked",
        "dismissed rejected failed avoided",
    ]
    for risk in assessment.key_risks[:3]:
        parts.extend((risk.area, risk.detail))
    parts.extend(assessment.patterns[:3])
    for goal in assessment.goal_progress_summary[:2]:
        if goal.bottleneck:
            parts.extend((goal.goal_title, goal.bottleneck))
    parts.extend(assessment.key_strengths[:2])
    return " ".join(p for p in parts if p).strip()


def format_rag_context(rag: RagContext | None, heading: str = "Relevant History") -> str:
    """Render retrieved items as a prompt section ('' when empty)."""
    if rag is None or not rag.items:
        return ""
    lines = [f"# {heading}", "Past entries similar to the current situation (most similar first):"]
    for item in rag.items:
        status = f" | {item.status}" if item.status else ""
        lines.append(
            f'- [{item.entity_type}] "{item.title}"{status} | similarity {item.similarity:.2f}'
        )
        if item.text:
            lines.append(f"  {item.text}")
    return "\n".join(lines) + "\n"


class RagRetriever:
    """Stage-scoped retrieval with a per-instance query embedding cache."""

    def __init__(
        self,
        store: VectorStore,
        embedder: EmbeddingProvider,
        *,
        similarity_threshold: float = 0.5,
        max_text_length: int = 300,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.similarity_threshold = similarity_threshold
        self.max_text_length = max_text_length
        self.timeout_seconds = timeout_seconds
        self._cache: dict[str, list[float]] = {}

    async def retrieve_for_assessment(
        self, state: StateSnapshot, context: RecommendationContext
    ) -> RagContext | None:
        query = build_assessment_query(state, context)
        if not query:
            return None
        return await self.retrieve(
            state.user_id, query, "assessment", ASSESSMENT_TOP_K, ASSESSMENT_ENTITY_TYPES
        )

    async def retrieve_for_selection(
        self,
        assessment: SituationalAssessment,
        context: RecommendationContext,
        user_id: str,
    ) -> RagContext | None:
        query = build_selection_query(assessment, context)
        if not query:
            return None
        return await self.retrieve(
            user_id, query, "selection", SELECTION_TOP_K, SELECTION_ENTITY_TYPES
        )

    async def retrieve(
        self,
        user_id: str,
        query: str,
        stage: str,
        top_k: int,
        entity_types: Sequence[str] | None = None,
    ) -> RagContext | None:
        start = time.monotonic()
        try:
            async with asyncio.timeout(self.timeout_seconds):
                vector = await self._embed(query)
                hits = await self.store.search(user_id, vector, top_k, entity_types)
        except TimeoutError:
            logger.warning(
                "RAG retrieval timed out for %s after %.1fs, continuing without context",
                stage,
                self.timeout_seconds,
            )
            return None
        except Exception as exc:
            logger.warning("RAG retrieval failed for %s: %s", stage, exc)
            return None

        items = tuple(
            RelevantContextItem(
                entity_type=h.entity_type,
                entity_id=h.entity_id,
                title=h.title,
                status=h.status,
                text=truncate_text(h.text, self.max_text_length),
                similarity=h.similarity,
            )
            for h in hits
            if h.similarity >= self.similarity_threshold
        )
        latency_ms = int((time.monotonic() - start) * 1000)
        logger.debug(
            "RAG retrieval for %s: %d items in %dms (query: %d chars)",
            stage,
            len(items),
            latency_ms,
            len(query),
        )
        return RagContext(stage=stage, items=items, query_text=query, latency_ms=latency_ms)

    async def _embed(self, text: str) -> list[float]:
        cached = self._cache.get(text)
        if cached is not None:
            return cached
        vector = await self.embedder.aembed(text)
        self._cache[text] = vector
        return vector
