"""One JSON-schema-constrained chat completion per Tier 2 stage.

``call_model`` never raises for call failures: it always returns a
``ModelCallResult`` whose ``record`` carries timing, token usage and, on
failure, the exception type and message. Content is ``None`` on failure or
when the model returned nothing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Protocol

from .assessment import LlmCallRecord

logger = logging.getLogger(__name__)

REASONING_EFFORT = "medium"


@dataclass(frozen=True)
class ModelCallResult:
    content: str | None
    record: LlmCallRecord


class ModelTransport(Protocol):
    async def call_model(
        self,
        *,
        stage: str,
        model: str,
        system_prompt: str,
        user_prompt: str,
        schema_name: str,
        schema: dict[str, Any],
    ) -> ModelCallResult: ...


def _usage_value(obj: Any, *path: str) -> int:
    for attr in path:
        if obj is None:
            return 0
        obj = getattr(obj, attr, None)
    return int(obj or 0)


class OpenAIModelTransport:
    def __init__(
        self,
        api_key: str = "",
        *,
        timeout_seconds: float = 60.0,
        max_output_tokens: int = 16000,
        client: Any = None,
    ) -> None:
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.max_output_tokens = max_output_tokens
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def call_model(
        self,
        *,
        stage: str,
        model: str,
        system_prompt: str,
        user_prompt: str,
        schema_name: str,
        schema: dict[str, Any],
    ) -> ModelCallResult:
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()

        def record(**fields: Any) -> LlmCallRecord:
            return LlmCallRecord(
                stage=stage,
                model=model,
                latency_ms=int((time.monotonic() - start) * 1000),
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
                **fields,
            )

        try:
            async with asyncio.timeout(self.timeout_seconds):
                response = await self._get_client().chat.completions.create(
                    model=model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    response_format={
                        "type": "json_schema",
                        "json_schema": {"name": schema_name, "schema": schema, "strict": True},
                    },
                    reasoning_effort=REASONING_EFFORT,
                    max_completion_tokens=self.max_output_tokens,
                )
        except TimeoutError:
            logger.warning("Model call %s timed out after %.0fs", stage, self.timeout_seconds)
            return ModelCallResult(
                None,
                record(
                    error_type="TimeoutError",
                    error_message=f"{stage} timed out after {self.timeout_seconds:.0f}s",
                ),
            )
        except Exception as exc:
            logger.warning("Model call %s failed: %s: %s", stage, type(exc).__name__, exc)
            return ModelCallResult(
                None, record(error_type=type(exc).__name__, error_message=str(exc))
            )

        usage = getattr(response, "usage", None)
        call_record = record(
            input_tokens=_usage_value(usage, "prompt_tokens"),
            output_tokens=_usage_value(usage, "completion_tokens"),
            cached_input_tokens=_usage_value(usage, "prompt_tokens_details", "cached_tokens"),
            reasoning_tokens=_usage_value(usage, "completion_tokens_details", "reasoning_tokens"),
            system_fingerprint=getattr(response, "system_fingerprint", None) or "",
            request_id=getattr(response, "id", None) or "",
        )

        content = None
        choices = getattr(response, "choices", None) or []
        if choices:
            content = choices[0].message.content
        if not content or not content.strip():
            logger.warning("Model call %s returned empty content", stage)
            return ModelCallResult(
                None,
                replace(
                    call_record,
                    error_type="EmptyResponse",
                    error_message="Model returned empty content",
                ),
            )

        logger.debug(
            "Model call %s: %d in / %d out tokens in %dms",
            stage,
            call_record.input_tokens,
            call_record.output_tokens,
            call_record.latency_ms,
        )
        return ModelCallResult(content, call_record)
