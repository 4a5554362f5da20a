"""Records produced by one tiered assessment run.

All records are created fresh per invocation and never mutated afterwards;
the caller persists them.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from .models import (
    ActionKind,
    RecommendationContext,
    RecommendationType,
    Severity,
    SignalEntry,
    TargetKind,
)


@dataclass(frozen=True)
class DirectRecommendationCandidate:
    """A fully formed, not yet persisted recommendation."""

    type: RecommendationType
    context: RecommendationContext
    target_kind: TargetKind
    target_entity_id: str | None
    target_entity_title: str | None
    action_kind: ActionKind
    title: str
    rationale: str
    score: float
    action_payload: dict[str, Any] | None = None
    action_summary: str | None = None
    contributing_signal_ids: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"score must be within [0, 1], got {self.score}")

    @property
    def target_key(self) -> tuple[TargetKind, str | None]:
        return (self.target_kind, self.target_entity_id)


@dataclass(frozen=True)
class RuleResult:
    rule_id: str
    rule_name: str
    triggered: bool
    severity: Severity = Severity.LOW
    evidence: dict[str, Any] = field(default_factory=dict)
    direct_recommendation: DirectRecommendationCandidate | None = None
    requires_escalation: bool = False

    @classmethod
    def not_triggered(
        cls, rule_id: str, rule_name: str, evidence: dict[str, Any] | None = None
    ) -> "RuleResult":
        return cls(rule_id=rule_id, rule_name=rule_name, triggered=False, evidence=evidence or {})


@dataclass(frozen=True)
class RuleEvaluationResult:
    all_results: tuple[RuleResult, ...]
    direct_recommendations: tuple[DirectRecommendationCandidate, ...]
    should_escalate_to_tier1: bool
    escalation_reason: str | None = None

    @property
    def triggered_rules(self) -> tuple[RuleResult, ...]:
        return tuple(r for r in self.all_results if r.triggered)

    @property
    def max_severity(self) -> Severity | None:
        triggered = self.triggered_rules
        if not triggered:
            return None
        return max((r.severity for r in triggered), key=lambda s: s.rank)


@dataclass(frozen=True)
class RelevantContextItem:
    entity_type: str
    entity_id: str
    title: str
    status: str | None
    text: str
    similarity: float


@dataclass(frozen=True)
class QuickAssessmentResult:
    combined_score: float
    should_escalate_to_tier2: bool
    escalation_reason: str | None = None
    relevance_score: float = 0.0
    delta_score: float = 0.0
    urgency_score: float = 0.0
    missed_items: int = 0
    relevant_context: tuple[RelevantContextItem, ...] = ()


@dataclass(frozen=True)
class RecommendationTarget:
    kind: TargetKind
    entity_id: str | None = None
    entity_title: str | None = None


@dataclass(frozen=True)
class Recommendation:
    """Persistable form of a candidate, stamped with id and expiry."""

    id: str
    user_id: str
    type: RecommendationType
    context: RecommendationContext
    target: RecommendationTarget
    action_kind: ActionKind
    title: str
    rationale: str
    score: float
    created_at: datetime
    expires_at: datetime
    action_payload: dict[str, Any] | None = None
    action_summary: str | None = None
    signal_ids: tuple[int, ...] = ()
    status: str = "pending"

    @classmethod
    def from_candidate(
        cls,
        user_id: str,
        candidate: DirectRecommendationCandidate,
        *,
        now: datetime,
        ttl_hours: int,
        signal_ids: tuple[int, ...] = (),
        context: RecommendationContext | None = None,
    ) -> "Recommendation":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            type=candidate.type,
            context=context or candidate.context,
            target=RecommendationTarget(
                kind=candidate.target_kind,
                entity_id=candidate.target_entity_id,
                entity_title=candidate.target_entity_title,
            ),
            action_kind=candidate.action_kind,
            title=candidate.title,
            rationale=candidate.rationale,
            score=candidate.score,
            created_at=now,
            expires_at=now + timedelta(hours=ttl_hours),
            action_payload=candidate.action_payload,
            action_summary=candidate.action_summary,
            signal_ids=candidate.contributing_signal_ids or signal_ids,
        )

    def content_key(self) -> tuple[Any, ...]:
        """Identity of the recommendation ignoring ids and timestamps."""
        return (
            self.type,
            self.context,
            self.target,
            self.action_kind,
            self.title,
            self.rationale,
            round(self.score, 6),
            self.action_summary,
        )


class ViolationSeverity(StrEnum):
    WARNING = "warning"
    REJECTED = "rejected"
    MODIFIED = "modified"


@dataclass(frozen=True)
class PolicyViolation:
    rule_name: str
    severity: ViolationSeverity
    message: str
    # None for violations about the batch as a whole
    recommendation_id: str | None = None


@dataclass(frozen=True)
class RejectedRecommendation:
    recommendation: Recommendation
    rule_violated: str
    reason: str


@dataclass(frozen=True)
class PolicyEnforcementResult:
    approved_recommendations: tuple[Recommendation, ...]
    rejected_recommendations: tuple[RejectedRecommendation, ...] = ()
    violations: tuple[PolicyViolation, ...] = ()

    @property
    def had_adjustments(self) -> bool:
        return bool(self.rejected_recommendations) or bool(self.violations)


@dataclass(frozen=True)
class LlmCallRecord:
    """Instrumentation for one model call, success or failure."""

    stage: str
    model: str
    latency_ms: int
    started_at: datetime
    completed_at: datetime
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    reasoning_tokens: int = 0
    system_fingerprint: str = ""
    request_id: str = ""
    provider: str = "openai"
    error_type: str | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error_type is None


@dataclass(frozen=True)
class AgentRun:
    id: str
    user_id: str
    stage: str
    model: str
    provider: str
    success: bool
    input_tokens: int
    output_tokens: int
    cached_input_tokens: int
    reasoning_tokens: int
    latency_ms: int
    started_at: datetime
    completed_at: datetime
    system_fingerprint: str = ""
    request_id: str = ""
    error_type: str | None = None
    error_taxonomy: str | None = None
    error_message: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class OrchestrationResult:
    selected_candidates: tuple[DirectRecommendationCandidate, ...]
    selection_method: str
    prompt_version: str | None = None
    model_version: str | None = None
    raw_response: str | None = None
    llm_calls: tuple[LlmCallRecord, ...] = ()


class AssessmentTier(StrEnum):
    TIER0_ONLY = "tier0_only"
    TIER1_STOP = "tier1_stop"
    TIER2_EXECUTED = "tier2_executed"


@dataclass(frozen=True)
class TieredAssessmentStatistics:
    tier0_rules_evaluated: int
    tier0_rules_triggered: int
    tier0_direct_recommendations: int
    tier1_combined_score: float | None
    tier1_relevant_context_items: int
    tier2_llm_calls_made: int
    policy_rejections: int
    duration_ms: int


@dataclass(frozen=True)
class TieredAssessmentOutcome:
    user_id: str
    processed_signals: tuple[SignalEntry, ...]
    tier0_result: RuleEvaluationResult
    tier1_result: QuickAssessmentResult | None
    tier2_executed: bool
    final_tier: AssessmentTier
    generated_recommendations: tuple[Recommendation, ...]
    policy_result: PolicyEnforcementResult
    statistics: TieredAssessmentStatistics
    started_at: datetime
    completed_at: datetime
    selection_method: str | None = None
    agent_runs: tuple[AgentRun, ...] = ()

    def summary(self) -> dict[str, Any]:
        """JSON-friendly digest stored alongside the outcome row."""
        tier1 = self.tier1_result
        return {
            "final_tier": self.final_tier.value,
            "tier2_executed": self.tier2_executed,
            "selection_method": self.selection_method,
            "tier0_escalation_reason": self.tier0_result.escalation_reason,
            "tier1_escalation_reason": tier1.escalation_reason if tier1 else None,
            "triggered_rules": [r.rule_id for r in self.tier0_result.triggered_rules],
            "rule_errors": {
                r.rule_id: r.evidence["error"]
                for r in self.tier0_result.all_results
                if "error" in r.evidence
            },
            "statistics": asdict(self.statistics),
            "rejected": [
                {"recommendation_id": r.recommendation.id, "rule": r.rule_violated, "reason": r.reason}
                for r in self.policy_result.rejected_recommendations
            ],
            "violations": [
                {
                    "recommendation_id": v.recommendation_id,
                    "rule": v.rule_name,
                    "severity": v.severity.value,
                    "message": v.message,
                }
                for v in self.policy_result.violations
            ],
        }
