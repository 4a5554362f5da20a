"""Tier 2: two-stage model pipeline over the Tier 0 candidates.

Stage 1 produces a situational assessment of the user, stage 2 selects and
re-words a subset of the pre-computed candidates. The model never invents
recommendations; it can only pick candidates by index.

``select`` never raises for model or parsing failures. The selection method
on the result says how far the pipeline got:

    disabled | no_candidates | stage1_failed | stage2_failed | error
    llm_selection_v1 (success)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field, replace
from typing import Any

from pydantic import ValidationError

from .assessment import DirectRecommendationCandidate, LlmCallRecord, OrchestrationResult
from .model_transport import ModelTransport
from .models import RecommendationContext, StateSnapshot
from .prompts import (
    PROMPT_VERSION,
    build_assessment_system_prompt,
    build_assessment_user_prompt,
    build_selection_system_prompt,
    build_selection_user_prompt,
)
from .retrieval import RagContext, RagRetriever
from .schemas import (
    ASSESSMENT_SCHEMA,
    ASSESSMENT_SCHEMA_NAME,
    SELECTION_SCHEMA,
    SELECTION_SCHEMA_NAME,
    CandidateSelectionResult,
    SituationalAssessment,
)

logger = logging.getLogger(__name__)

METHOD_DISABLED = "disabled"
METHOD_NO_CANDIDATES = "no_candidates"
METHOD_STAGE1_FAILED = "stage1_failed"
METHOD_STAGE2_FAILED = "stage2_failed"
METHOD_ERROR = "error"
METHOD_LLM_SELECTION = "llm_selection_v1"

RANK_BOOST_STEP = 0.01


def _parse_failure(record: LlmCallRecord, exc: ValidationError) -> LlmCallRecord:
    """The call went through but its reply broke the contract."""
    return replace(record, error_type="ValidationError", error_message=str(exc))


@dataclass
class _PipelineTrace:
    candidates: int
    assessment_rag: RagContext | None = None
    assessment: SituationalAssessment | None = None
    selection_rag: RagContext | None = None
    selection: CandidateSelectionResult | None = None
    selected_indices: list[int] = field(default_factory=list)

    def to_json(self) -> str:
        def rag(ctx: RagContext | None) -> dict[str, Any] | None:
            if ctx is None:
                return None
            return {
                "stage": ctx.stage,
                "query": ctx.query_text,
                "latency_ms": ctx.latency_ms,
                "items": [asdict(item) for item in ctx.items],
            }

        return json.dumps(
            {
                "candidates": self.candidates,
                "assessment_rag": rag(self.assessment_rag),
                "assessment": (
                    self.assessment.model_dump(mode="json", by_alias=True)
                    if self.assessment
                    else None
                ),
                "selection_rag": rag(self.selection_rag),
                "selection": (
                    self.selection.model_dump(mode="json", by_alias=True)
                    if self.selection
                    else None
                ),
                "selected_indices": self.selected_indices,
            },
            separators=(",", ":"),
        )


def convert_selections(
    candidates: Sequence[DirectRecommendationCandidate],
    selection: CandidateSelectionResult,
    context: RecommendationContext,
) -> list[tuple[int, DirectRecommendationCandidate]]:
    """Map model selections back onto candidates, best rank first.

    Out-of-range indices are dropped with a warning. The model's rationale
    and refined summary replace the rule text when they are non-blank, and
    the score gets a small rank boost when more than one rank is in play.
    """
    valid = sorted(
        (s for s in selection.selections if 0 <= s.candidate_index < len(candidates)),
        key=lambda s: s.priority_rank,
    )
    invalid = [
        s.candidate_index
        for s in selection.selections
        if not 0 <= s.candidate_index < len(candidates)
    ]
    if invalid:
        logger.warning(
            "Model returned %d invalid candidate indices: %s",
            len(invalid),
            ", ".join(str(i) for i in invalid),
        )
    if not valid:
        return []

    max_rank = max(s.priority_rank for s in valid)
    converted = []
    for s in valid:
        candidate = candidates[s.candidate_index]
        boost = (max_rank - s.priority_rank + 1) * RANK_BOOST_STEP if max_rank > 1 else 0.0
        converted.append(
            (
                s.candidate_index,
                replace(
                    candidate,
                    context=context,
                    rationale=s.rationale if s.rationale and s.rationale.strip() else candidate.rationale,
                    action_summary=(
                        s.refined_action_summary
                        if s.refined_action_summary and s.refined_action_summary.strip()
                        else candidate.action_summary
                    ),
                    score=round(min(1.0, candidate.score + boost), 6),
                ),
            )
        )
    return converted


class Tier2Orchestrator:
    def __init__(
        self,
        transport: ModelTransport | None,
        retriever: RagRetriever | None = None,
        *,
        model: str = "gpt-5-mini",
        enabled: bool = True,
    ) -> None:
        self.transport = transport
        self.retriever = retriever
        self.model = model
        self.enabled = enabled and transport is not None

    async def select(
        self,
        state: StateSnapshot,
        candidates: Sequence[DirectRecommendationCandidate],
        context: RecommendationContext,
    ) -> OrchestrationResult:
        if not self.enabled:
            logger.warning("Tier 2 disabled or no API key configured, returning empty selection")
            return OrchestrationResult(selected_candidates=(), selection_method=METHOD_DISABLED)
        if not candidates:
            logger.info("No candidates for Tier 2, returning empty selection")
            return OrchestrationResult(
                selected_candidates=(), selection_method=METHOD_NO_CANDIDATES
            )

        calls: list[LlmCallRecord] = []
        try:
            return await self._run_pipeline(state, list(candidates), context, calls)
        except Exception:
            logger.exception(
                "Tier 2 pipeline failed for user %s",
                state.user_id,
                extra={"mastery_user_id": state.user_id, "mastery_tier": "tier2"},
            )
            return OrchestrationResult(
                selected_candidates=(),
                selection_method=METHOD_ERROR,
                llm_calls=tuple(calls),
            )

    async def _run_pipeline(
        self,
        state: StateSnapshot,
        candidates: list[DirectRecommendationCandidate],
        context: RecommendationContext,
        calls: list[LlmCallRecord],
    ) -> OrchestrationResult:
        trace = _PipelineTrace(candidates=len(candidates))

        if self.retriever is not None:
            trace.assessment_rag = await self.retriever.retrieve_for_assessment(state, context)

        logger.info("Tier 2 stage 1: situational assessment for context %s", context.value)
        assessment = await self._assess(state, context, trace.assessment_rag, calls)
        if assessment is None:
            logger.warning("Tier 2 stage 1 failed for user %s", state.user_id)
            return OrchestrationResult(
                selected_candidates=(),
                selection_method=METHOD_STAGE1_FAILED,
                llm_calls=tuple(calls),
            )
        trace.assessment = assessment

        if self.retriever is not None:
            trace.selection_rag = await self.retriever.retrieve_for_selection(
                assessment, context, state.user_id
            )

        logger.info("Tier 2 stage 2: selecting from %d candidates", len(candidates))
        selection = await self._select(
            assessment, candidates, context, state, trace.selection_rag, calls
        )
        converted = (
            convert_selections(candidates, selection, context) if selection is not None else []
        )
        if not converted:
            logger.warning(
                "Tier 2 stage 2 failed or returned no usable selections for user %s",
                state.user_id,
            )
            return OrchestrationResult(
                selected_candidates=(),
                selection_method=METHOD_STAGE2_FAILED,
                llm_calls=tuple(calls),
            )
        trace.selection = selection
        trace.selected_indices = [index for index, _ in converted]

        logger.info(
            "Tier 2 complete: %d/%d candidates selected",
            len(converted),
            len(candidates),
            extra={"mastery_user_id": state.user_id, "mastery_tier": "tier2"},
        )
        return OrchestrationResult(
            selected_candidates=tuple(c for _, c in converted),
            selection_method=METHOD_LLM_SELECTION,
            prompt_version=PROMPT_VERSION,
            model_version=self.model,
            raw_response=trace.to_json(),
            llm_calls=tuple(calls),
        )

    async def _assess(
        self,
        state: StateSnapshot,
        context: RecommendationContext,
        rag: RagContext | None,
        calls: list[LlmCallRecord],
    ) -> SituationalAssessment | None:
        result = await self.transport.call_model(
            stage="assessment",
            model=self.model,
            system_prompt=build_assessment_system_prompt(context),
            user_prompt=build_assessment_user_prompt(state, context, rag),
            schema_name=ASSESSMENT_SCHEMA_NAME,
            schema=ASSESSMENT_SCHEMA,
        )
        if result.content is None:
            calls.append(result.record)
            return None
        try:
            assessment = SituationalAssessment.model_validate_json(result.content)
        except ValidationError as exc:
            logger.warning("Could not parse assessment response: %s", exc)
            calls.append(_parse_failure(result.record, exc))
            return None
        calls.append(result.record)
        return assessment

    async def _select(
        self,
        assessment: SituationalAssessment,
        candidates: list[DirectRecommendationCandidate],
        context: RecommendationContext,
        state: StateSnapshot,
        rag: RagContext | None,
        calls: list[LlmCallRecord],
    ) -> CandidateSelectionResult | None:
        result = await self.transport.call_model(
            stage="selection",
            model=self.model,
            system_prompt=build_selection_system_prompt(context),
            user_prompt=build_selection_user_prompt(
                assessment, candidates, context, state.profile, rag
            ),
            schema_name=SELECTION_SCHEMA_NAME,
            schema=SELECTION_SCHEMA,
        )
        if result.content is None:
            calls.append(result.record)
            return None
        try:
            selection = CandidateSelectionResult.model_validate_json(result.content)
        except ValidationError as exc:
            logger.warning("Could not parse selection response: %s", exc)
            calls.append(_parse_failure(result.record, exc))
            return None
        calls.append(result.record)
        return selection
