"""Structured-output contracts for the two Tier 2 model stages.

The pydantic models are the contract. ``*_SCHEMA`` dicts are derived from
them and sent as strict ``json_schema`` response formats, so every field is
required (nullable where the model may omit a value) and unknown keys are
forbidden. A ``ValidationError`` while parsing a reply is a stage failure.
"""

from __future__ import annotations

import copy
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ASSESSMENT_SCHEMA_NAME = "situational_assessment"
SELECTION_SCHEMA_NAME = "recommendation_selection"

Momentum = Literal["stalled", "slowing", "steady", "accelerating"]


class _Response(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="forbid")


class AssessmentRisk(_Response):
    area: str
    detail: str
    severity: Literal["high", "medium", "low"]


class GoalProgressEntry(_Response):
    goal_title: str = Field(alias="goalTitle")
    momentum: Momentum
    bottleneck: str


class SituationalAssessment(_Response):
    capacity_status: Literal["overloaded", "stretched", "balanced", "underloaded"] = Field(
        alias="capacityStatus"
    )
    energy_trend: Literal["declining", "stable", "improving"] = Field(alias="energyTrend")
    overall_momentum: Momentum = Field(alias="overallMomentum")
    key_strengths: list[str] = Field(alias="keyStrengths")
    key_risks: list[AssessmentRisk] = Field(alias="keyRisks")
    patterns: list[str]
    goal_progress_summary: list[GoalProgressEntry] = Field(alias="goalProgressSummary")
    context_notes: str = Field(alias="contextNotes")


class CandidateSelection(_Response):
    candidate_index: int = Field(alias="candidateIndex")
    rationale: str
    priority_rank: int = Field(alias="priorityRank")
    refined_action_summary: str | None = Field(alias="refinedActionSummary")


class CandidateSelectionResult(_Response):
    selections: list[CandidateSelection]
    overall_strategy: str = Field(alias="overallStrategy")
    rejected_candidates_reasoning: str | None = Field(alias="rejectedCandidatesReasoning")


def _inline(node: Any, defs: dict[str, Any]) -> Any:
    if isinstance(node, dict):
        ref = node.get("$ref")
        if ref is not None:
            return _inline(copy.deepcopy(defs[ref.rsplit("/", 1)[-1]]), defs)
        return {k: _inline(v, defs) for k, v in node.items() if k not in ("title", "$defs")}
    if isinstance(node, list):
        return [_inline(item, defs) for item in node]
    return node


def strict_json_schema(model: type[BaseModel]) -> dict[str, Any]:
    """Model schema by alias with ``$defs`` inlined and titles dropped."""
    schema = model.model_json_schema(by_alias=True)
    return _inline(schema, schema.get("$defs", {}))


ASSESSMENT_SCHEMA: dict[str, Any] = strict_json_schema(SituationalAssessment)
SELECTION_SCHEMA: dict[str, Any] = strict_json_schema(CandidateSelectionResult)
