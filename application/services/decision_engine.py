# application/services/decision_engine.py
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Tuple

from domain.models.work_item import (
    Classification,
    Complexity,
    DelegationDecision,
    DelegationStrategy,
    TaskType,
)

DURATION_BY_COMPLEXITY: Dict[Complexity, str] = {
    Complexity.SIMPLE: "30 min - 1 hour",
    Complexity.MEDIUM: "2-4 hours",
    Complexity.COMPLEX: "1-2 days",
}

DURATION_BY_TYPE: Dict[TaskType, str] = {
    TaskType.BUG_FIX: "1-2 hours",
    TaskType.TEST: "2-3 hours",
    TaskType.DOCUMENTATION: "1-2 hours",
}


@dataclass(frozen=True)
class DelegationPolicy:
    """Threshold policy applied to every classification"""
    threshold: int = 6
    max_concurrency: int = 5
    direct_types: FrozenSet[TaskType] = field(default_factory=lambda: frozenset({
        TaskType.BUG_FIX,
        TaskType.TEST,
        TaskType.DOCUMENTATION,
    }))

    def __post_init__(self):
        if self.max_concurrency < 0:
            raise ValueError("max_concurrency must be non-negative")


class DecisionEngine:
    """Turns a classification into a delegate / do-not-delegate verdict.

    ``decide`` is a pure function of the classification, the in-flight session
    count and the policy: it has no side effects and the same inputs always
    yield the same decision.
    """

    def __init__(self, policy: Optional[DelegationPolicy] = None):
        self.policy = policy or DelegationPolicy()

    def decide(self, classification: Classification, in_flight: int) -> DelegationDecision:
        score = classification.complexity_score
        estimated = self.estimate_duration(classification)

        # Below-threshold work is never delegated, whatever its priority
        if score < self.policy.threshold:
            return DelegationDecision(
                should_delegate=False,
                strategy=DelegationStrategy.NONE,
                reason=f"score {score} below threshold {self.policy.threshold}",
                estimated_duration=estimated,
                complexity_score=score,
            )

        # New work is deferred rather than queued when at capacity
        if in_flight >= self.policy.max_concurrency:
            return DelegationDecision(
                should_delegate=False,
                strategy=DelegationStrategy.NONE,
                reason=(f"capacity reached: {in_flight} of "
                        f"{self.policy.max_concurrency} sessions in flight"),
                estimated_duration=estimated,
                complexity_score=score,
            )

        strategy, why = self.select_strategy(classification)
        return DelegationDecision(
            should_delegate=True,
            strategy=strategy,
            reason=f"score {score} meets threshold {self.policy.threshold}; {why}",
            estimated_duration=estimated,
            complexity_score=score,
            requires_review=strategy != DelegationStrategy.DIRECT,
        )

    def select_strategy(self, classification: Classification) -> Tuple[DelegationStrategy, str]:
        if classification.complexity == Complexity.COMPLEX or classification.cross_cutting:
            return DelegationStrategy.REVIEW_FIRST, "complex or cross-cutting work needs review"

        # SPLIT and PARALLEL are never chosen without an explicit multi-part signal
        if classification.has_multi_part_signal:
            if classification.parallel_requested:
                return (DelegationStrategy.PARALLEL,
                        f"{len(classification.checklist_items)} checklist items fanned out")
            return (DelegationStrategy.SPLIT,
                    f"{len(classification.checklist_items)} checklist items split into sub-tasks")

        if classification.task_type in self.policy.direct_types:
            return DelegationStrategy.DIRECT, f"{classification.task_type.value} work delegated directly"

        return (DelegationStrategy.REVIEW_FIRST,
                f"{classification.task_type.value} work delegated with review")

    def estimate_duration(self, classification: Classification) -> str:
        if classification.complexity != Complexity.COMPLEX:
            by_type = DURATION_BY_TYPE.get(classification.task_type)
            if by_type:
                return by_type
        return DURATION_BY_COMPLEXITY[classification.complexity]
