"""Top-level Tier 0 -> Tier 1 -> Tier 2 state machine.

Exit points, in order:

    tier0_only      Tier 0 produced candidates and nothing asked for more
    tier1_stop      Tier 1 decided the model stage is not worth running
    tier2_executed  the model stage ran (successfully or not)

Every exit passes its recommendations through the policy enforcer. Early
exits and any Tier 2 failure use the ranked Tier 0 candidates; a Tier 2
run that selected candidates replaces them and records a fresh delta
baseline for the user.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Any

import psycopg

from .agent_telemetry import build_agent_run
from .assessment import (
    AssessmentTier,
    DirectRecommendationCandidate,
    OrchestrationResult,
    QuickAssessmentResult,
    Recommendation,
    RuleEvaluationResult,
    TieredAssessmentOutcome,
    TieredAssessmentStatistics,
)
from .config import Config
from .embeddings import get_embedding_provider
from .model_transport import OpenAIModelTransport
from .models import (
    ProcessingWindowType,
    RecommendationContext,
    SignalEntry,
    SignalPriority,
    StateSnapshot,
)
from .orchestrator import METHOD_LLM_SELECTION, Tier2Orchestrator
from .policy import RecommendationPolicyEnforcer
from .quick_assessment import QuickAssessor
from .ranker import rank
from .retrieval import PgVectorStore, RagRetriever
from .rule_engine import RuleEngine
from .rules import default_rules
from .state_delta import PgBaselineStore, StateDeltaCalculator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def determine_context(signals: Sequence[SignalEntry]) -> RecommendationContext:
    """Pick the Tier 2 prompt context from the batch's signals."""
    if any("checkin" in s.event_type.lower() for s in signals):
        morning = any(
            "morning" in s.event_type.lower()
            or s.window_type == ProcessingWindowType.MORNING_WINDOW
            for s in signals
        )
        return (
            RecommendationContext.MORNING_CHECK_IN
            if morning
            else RecommendationContext.EVENING_CHECK_IN
        )
    if any(
        s.window_type == ProcessingWindowType.WEEKLY_REVIEW or "weekly" in s.event_type.lower()
        for s in signals
    ):
        return RecommendationContext.WEEKLY_REVIEW
    if any(s.priority == SignalPriority.URGENT for s in signals):
        return RecommendationContext.DRIFT_ALERT
    return RecommendationContext.PROACTIVE_CHECK


def should_escalate_to_tier1(
    tier0: RuleEvaluationResult, signals: Sequence[SignalEntry]
) -> bool:
    return (
        tier0.should_escalate_to_tier1
        or any(s.priority == SignalPriority.URGENT for s in signals)
        or not tier0.direct_recommendations
    )


class TieredAssessmentEngine:
    def __init__(
        self,
        rule_engine: RuleEngine,
        quick_assessor: QuickAssessor,
        orchestrator: Tier2Orchestrator,
        delta_calculator: StateDeltaCalculator,
        policy_enforcer: RecommendationPolicyEnforcer | None = None,
        *,
        max_recommendations: int = 5,
        recommendation_ttl_hours: int = 24,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.rule_engine = rule_engine
        self.quick_assessor = quick_assessor
        self.orchestrator = orchestrator
        self.delta_calculator = delta_calculator
        self.policy_enforcer = policy_enforcer or RecommendationPolicyEnforcer()
        self.max_recommendations = max_recommendations
        self.recommendation_ttl_hours = recommendation_ttl_hours
        self.clock = clock

    async def assess(
        self, state: StateSnapshot, signals: Sequence[SignalEntry]
    ) -> TieredAssessmentOutcome:
        started_at = self.clock()
        start = time.monotonic()
        signals = tuple(signals)
        log_extra = {"mastery_user_id": state.user_id}

        logger.info(
            "Starting tiered assessment for user %s with %d signals",
            state.user_id,
            len(signals),
            extra=log_extra,
        )

        tier0 = await self.rule_engine.evaluate(state, signals)
        logger.debug(
            "Tier 0 complete: %d/%d rules triggered, %d direct recommendations",
            len(tier0.triggered_rules),
            len(tier0.all_results),
            len(tier0.direct_recommendations),
        )

        if not should_escalate_to_tier1(tier0, signals):
            logger.info(
                "Tier 0 sufficient for user %s: %d candidates",
                state.user_id,
                len(tier0.direct_recommendations),
                extra={**log_extra, "mastery_tier": AssessmentTier.TIER0_ONLY.value},
            )
            return self._finish(
                state,
                signals,
                tier0,
                None,
                AssessmentTier.TIER0_ONLY,
                self._fallback(tier0),
                None,
                None,
                started_at,
                start,
            )

        tier1 = await self.quick_assessor.assess(state, signals, tier0)
        if not tier1.should_escalate_to_tier2:
            logger.info(
                "Tier 1 stop for user %s: score=%.2f",
                state.user_id,
                tier1.combined_score,
                extra={**log_extra, "mastery_tier": AssessmentTier.TIER1_STOP.value},
            )
            return self._finish(
                state,
                signals,
                tier0,
                tier1,
                AssessmentTier.TIER1_STOP,
                self._fallback(tier0),
                None,
                None,
                started_at,
                start,
            )

        logger.info(
            "Escalating to Tier 2 for user %s: %s",
            state.user_id,
            tier1.escalation_reason,
            extra={**log_extra, "mastery_tier": AssessmentTier.TIER2_EXECUTED.value},
        )
        context = determine_context(signals)
        orchestration: OrchestrationResult | None = None
        candidates = self._fallback(tier0)
        try:
            orchestration = await self.orchestrator.select(
                state, tier0.direct_recommendations, context
            )
        except Exception:
            logger.exception(
                "Tier 2 failed for user %s, falling back to Tier 0 recommendations",
                state.user_id,
                extra=log_extra,
            )
        else:
            if (
                orchestration.selection_method == METHOD_LLM_SELECTION
                and orchestration.selected_candidates
            ):
                candidates = list(orchestration.selected_candidates)
                await self._record_baseline(state)
            logger.info(
                "Tier 2 complete for user %s: %d recommendations via %s",
                state.user_id,
                len(candidates),
                orchestration.selection_method,
                extra=log_extra,
            )

        return self._finish(
            state,
            signals,
            tier0,
            tier1,
            AssessmentTier.TIER2_EXECUTED,
            candidates,
            orchestration,
            context,
            started_at,
            start,
        )

    async def _record_baseline(self, state: StateSnapshot) -> None:
        try:
            await self.delta_calculator.record_baseline(state.user_id, state)
        except Exception:
            logger.exception(
                "Could not record state baseline for user %s, keeping Tier 2 selections",
                state.user_id,
                extra={"mastery_user_id": state.user_id},
            )

    def _fallback(self, tier0: RuleEvaluationResult) -> list[DirectRecommendationCandidate]:
        return rank(tier0.direct_recommendations, max_results=self.max_recommendations)

    def _finish(
        self,
        state: StateSnapshot,
        signals: tuple[SignalEntry, ...],
        tier0: RuleEvaluationResult,
        tier1: QuickAssessmentResult | None,
        final_tier: AssessmentTier,
        candidates: Sequence[DirectRecommendationCandidate],
        orchestration: OrchestrationResult | None,
        context: RecommendationContext | None,
        started_at: datetime,
        start: float,
    ) -> TieredAssessmentOutcome:
        now = self.clock()
        signal_ids = tuple(s.id for s in signals)
        recommendations = [
            Recommendation.from_candidate(
                state.user_id,
                c,
                now=now,
                ttl_hours=self.recommendation_ttl_hours,
                signal_ids=signal_ids,
                context=context,
            )
            for c in candidates
        ]
        policy_context = context or (
            recommendations[0].context if recommendations else determine_context(signals)
        )
        policy_result = self.policy_enforcer.enforce(recommendations, state, policy_context)

        llm_calls = orchestration.llm_calls if orchestration is not None else ()
        statistics = TieredAssessmentStatistics(
            tier0_rules_evaluated=len(tier0.all_results),
            tier0_rules_triggered=len(tier0.triggered_rules),
            tier0_direct_recommendations=len(tier0.direct_recommendations),
            tier1_combined_score=tier1.combined_score if tier1 is not None else None,
            tier1_relevant_context_items=len(tier1.relevant_context) if tier1 is not None else 0,
            tier2_llm_calls_made=len(llm_calls),
            policy_rejections=len(policy_result.rejected_recommendations),
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        return TieredAssessmentOutcome(
            user_id=state.user_id,
            processed_signals=signals,
            tier0_result=tier0,
            tier1_result=tier1,
            tier2_executed=final_tier == AssessmentTier.TIER2_EXECUTED,
            final_tier=final_tier,
            generated_recommendations=policy_result.approved_recommendations,
            policy_result=policy_result,
            statistics=statistics,
            started_at=started_at,
            completed_at=self.clock(),
            selection_method=orchestration.selection_method if orchestration else None,
            agent_runs=tuple(build_agent_run(state.user_id, r) for r in llm_calls),
        )


def build_tiered_engine(
    conn: psycopg.AsyncConnection[Any], config: Config
) -> TieredAssessmentEngine:
    """Wire the production engine against one job connection."""
    delta_calculator = StateDeltaCalculator(PgBaselineStore(conn))
    retriever = RagRetriever(
        PgVectorStore(conn),
        get_embedding_provider(),
        similarity_threshold=config.rag_similarity_threshold,
        max_text_length=config.rag_max_text_length,
        timeout_seconds=config.rag_timeout_seconds,
    )
    transport = (
        OpenAIModelTransport(
            config.openai_api_key,
            timeout_seconds=config.tier2_timeout_seconds,
            max_output_tokens=config.tier2_max_output_tokens,
        )
        if config.tier2_available
        else None
    )
    return TieredAssessmentEngine(
        RuleEngine(default_rules(), timeout_seconds=config.rule_timeout_seconds),
        QuickAssessor(
            delta_calculator,
            retriever,
            escalation_threshold=config.escalation_threshold,
        ),
        Tier2Orchestrator(
            transport,
            retriever,
            model=config.tier2_model,
            enabled=config.tier2_available,
        ),
        delta_calculator,
        max_recommendations=config.max_recommendations,
        recommendation_ttl_hours=config.recommendation_ttl_hours,
    )
