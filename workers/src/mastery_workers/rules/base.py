"""Rule contract for Tier 0.

A rule is a pure function of ``(state, signals)``. Evaluation returns a
tagged result: ``Ok(RuleResult)`` on success or ``Err(reason)`` when the
rule cannot reach a verdict from the data it was given. The engine turns an
``Err`` into a non-triggered result carrying the reason as evidence.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from ..assessment import DirectRecommendationCandidate, RuleResult
from ..models import Severity, SignalEntry, StateSnapshot

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    reason: str


RuleOutcome = Union[Ok[RuleResult], Err]


def find_signal(signals: Iterable[SignalEntry], *event_types: str) -> SignalEntry | None:
    wanted = set(event_types)
    for signal in signals:
        if signal.event_type in wanted:
            return signal
    return None


class Rule(ABC):
    """Base class for deterministic rules."""

    rule_id: str = ""
    name: str = ""
    description: str = ""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled

    @abstractmethod
    def evaluate(self, state: StateSnapshot, signals: Sequence[SignalEntry]) -> RuleOutcome:
        ...

    def not_triggered(self, evidence: dict[str, Any] | None = None) -> Ok[RuleResult]:
        return Ok(RuleResult.not_triggered(self.rule_id, self.name, evidence))

    def triggered(
        self,
        severity: Severity,
        evidence: dict[str, Any],
        recommendation: DirectRecommendationCandidate | None = None,
        *,
        requires_escalation: bool = False,
    ) -> Ok[RuleResult]:
        return Ok(
            RuleResult(
                rule_id=self.rule_id,
                rule_name=self.name,
                triggered=True,
                severity=severity,
                evidence=evidence,
                direct_recommendation=recommendation,
                requires_escalation=requires_escalation,
            )
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.rule_id} enabled={self.enabled}>"
