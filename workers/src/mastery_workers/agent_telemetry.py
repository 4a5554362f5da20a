"""Agent run persistence and model-call error taxonomy helpers."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from typing import Any

import psycopg

from .assessment import AgentRun, LlmCallRecord

logger = logging.getLogger(__name__)

LLM_ERROR_TIMEOUT = "timeout"
LLM_ERROR_RATE_LIMITED = "rate_limited"
LLM_ERROR_AUTHENTICATION = "authentication"
LLM_ERROR_INVALID_RESPONSE = "invalid_response"
LLM_ERROR_TRANSPORT = "transport"
LLM_ERROR_UNEXPECTED = "unexpected"

LLM_ERROR_TAXONOMY = (
    LLM_ERROR_TIMEOUT,
    LLM_ERROR_RATE_LIMITED,
    LLM_ERROR_AUTHENTICATION,
    LLM_ERROR_INVALID_RESPONSE,
    LLM_ERROR_TRANSPORT,
    LLM_ERROR_UNEXPECTED,
)

MAX_ERROR_MESSAGE_LENGTH = 500

_ERROR_HINTS: dict[str, tuple[str, ...]] = {
    LLM_ERROR_TIMEOUT: (
        "timeout",
        "timed out",
        "deadline",
    ),
    LLM_ERROR_RATE_LIMITED: (
        "ratelimit",
        "rate limit",
        "rate_limit",
        "429",
        "quota",
    ),
    LLM_ERROR_AUTHENTICATION: (
        "authentication",
        "permissiondenied",
        "unauthorized",
        "401",
        "403",
        "api key",
    ),
    LLM_ERROR_INVALID_RESPONSE: (
        "emptyresponse",
        "empty content",
        "validationerror",
        "jsondecodeerror",
        "badrequest",
        "unprocessable",
    ),
    LLM_ERROR_TRANSPORT: (
        "apiconnectionerror",
        "connection",
        "connecterror",
        "network",
        "internalservererror",
        "502",
        "503",
    ),
}


def classify_llm_error(error_type: str | None, error_message: str | None = None) -> str | None:
    """Map a failed call's exception type and message to a stable taxonomy.

    Returns ``None`` when there was no error.
    """
    if not error_type and not error_message:
        return None
    text = f"{error_type or ''} {error_message or ''}".strip().lower()
    for code in (
        LLM_ERROR_TIMEOUT,
        LLM_ERROR_RATE_LIMITED,
        LLM_ERROR_AUTHENTICATION,
        LLM_ERROR_INVALID_RESPONSE,
        LLM_ERROR_TRANSPORT,
    ):
        if any(token in text for token in _ERROR_HINTS[code]):
            return code
    return LLM_ERROR_UNEXPECTED


def _truncate(message: str | None) -> str | None:
    if message is None:
        return None
    if len(message) <= MAX_ERROR_MESSAGE_LENGTH:
        return message
    return message[:MAX_ERROR_MESSAGE_LENGTH]


def build_agent_run(user_id: str, record: LlmCallRecord) -> AgentRun:
    return AgentRun(
        id=str(uuid.uuid4()),
        user_id=user_id,
        stage=record.stage,
        model=record.model,
        provider=record.provider,
        success=record.succeeded,
        input_tokens=record.input_tokens,
        output_tokens=record.output_tokens,
        cached_input_tokens=record.cached_input_tokens,
        reasoning_tokens=record.reasoning_tokens,
        latency_ms=record.latency_ms,
        started_at=record.started_at,
        completed_at=record.completed_at,
        system_fingerprint=record.system_fingerprint,
        request_id=record.request_id,
        error_type=record.error_type,
        error_taxonomy=classify_llm_error(record.error_type, record.error_message),
        error_message=_truncate(record.error_message),
    )


async def record_agent_run(
    conn: psycopg.AsyncConnection[Any],
    run: AgentRun,
    *,
    outcome_id: str | None = None,
) -> None:
    """Persist one agent run row in agent_runs."""
    async with conn.cursor() as cur:
        await cur.execute(
            """
            INSERT INTO agent_runs (
                id, user_id, outcome_id, stage, model, provider, success,
                input_tokens, output_tokens, cached_input_tokens, reasoning_tokens,
                latency_ms, system_fingerprint, request_id,
                error_type, error_taxonomy, error_message,
                started_at, completed_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                run.id,
                run.user_id,
                outcome_id,
                run.stage,
                run.model,
                run.provider,
                run.success,
                run.input_tokens,
                run.output_tokens,
                run.cached_input_tokens,
                run.reasoning_tokens,
                run.latency_ms,
                run.system_fingerprint,
                run.request_id,
                run.error_type,
                run.error_taxonomy,
                run.error_message,
                run.started_at,
                run.completed_at,
            ),
        )


async def safe_record_agent_runs(
    conn: psycopg.AsyncConnection[Any],
    runs: Iterable[AgentRun],
    *,
    outcome_id: str | None = None,
) -> int:
    """Best-effort telemetry write that never breaks recommendation processing.

    Each row is written inside its own savepoint so one bad row does not
    abort the surrounding job transaction. Returns the number written.
    """
    written = 0
    for run in runs:
        try:
            async with conn.transaction():
                await record_agent_run(conn, run, outcome_id=outcome_id)
            written += 1
        except Exception as exc:
            logger.warning(
                "Agent run telemetry write failed (stage=%s model=%s): %s",
                run.stage,
                run.model,
                exc,
            )
    return written
