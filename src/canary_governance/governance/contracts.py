"""Contracts for canary rollouts and A/B experiments."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from canary_governance.time_utils import now_utc


class RolloutStatus(StrEnum):
    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    ABORTED = "aborted"
    ROLLED_BACK = "rolled_back"
    COMPLETED = "completed"
    PROMOTED = "promoted"


# COMPLETED still serves traffic until its version is promoted to stable.
TERMINAL_ROLLOUT_STATES = frozenset(
    {RolloutStatus.ABORTED, RolloutStatus.ROLLED_BACK, RolloutStatus.COMPLETED, RolloutStatus.PROMOTED}
)
ACTIVE_ROLLOUT_STATES = frozenset({RolloutStatus.IN_PROGRESS, RolloutStatus.COMPLETED})
# Rollouts whose traffic a rollback or promotion may still have to move.
LIVE_ROLLOUT_STATES = frozenset({RolloutStatus.IN_PROGRESS, RolloutStatus.PAUSED, RolloutStatus.COMPLETED})


class EvaluationMetric(StrEnum):
    LATENCY_P95 = "latency_p95"
    LATENCY_P99 = "latency_p99"
    ERROR_RATE = "error_rate"
    THROUGHPUT = "throughput"
    CONFIDENCE = "confidence"
    USER_EXPERIENCE = "user_experience"


@dataclass(slots=True)
class StepCriterion:
    metric: EvaluationMetric
    target: float


@dataclass(slots=True)
class MetricObservation:
    metric: EvaluationMetric
    value: float


@dataclass(slots=True)
class CriterionResult:
    metric: EvaluationMetric
    expected: float
    actual: float
    passed: bool
    matched: bool = True


@dataclass(slots=True)
class RolloutStep:
    target_percentage: float
    duration_seconds: float
    criteria: list[StepCriterion] = field(default_factory=list)


@dataclass(slots=True)
class StepEvaluation:
    rollout_id: str
    step_index: int
    passed: bool
    results: list[CriterionResult]
    evaluated_at: datetime = field(default_factory=now_utc)

    def failed_metrics(self) -> list[str]:
        return [str(r.metric) for r in self.results if not r.passed]


@dataclass(slots=True)
class Rollout:
    """One canary campaign."""

    rollout_id: str
    model_version: str
    steps: list[RolloutStep]
    paths: list[str] = field(default_factory=list)
    status: RolloutStatus = RolloutStatus.PLANNING
    current_step_index: int = 0
    current_percentage: float = 0.0
    target_percentage: float = 0.0
    status_reason: str | None = None
    final_percentage: float | None = None
    created_at: datetime = field(default_factory=now_utc)
    started_at: datetime | None = None
    updated_at: datetime = field(default_factory=now_utc)

    def serves_path(self, path: str) -> bool:
        return not self.paths or path in self.paths

    def to_dict(self) -> dict[str, Any]:
        return {
            "rollout_id": self.rollout_id,
            "model_version": self.model_version,
            "paths": list(self.paths),
            "status": str(self.status),
            "current_step_index": self.current_step_index,
            "total_steps": len(self.steps),
            "current_percentage": self.current_percentage,
            "target_percentage": self.target_percentage,
            "status_reason": self.status_reason,
            "final_percentage": self.final_percentage,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(slots=True)
class CanaryRoutingDecision:
    route_to_canary: bool
    routing_reason: str
    model_version: str | None = None
    rollout_id: str | None = None
    percentage: float = 0.0
    bucket: int | None = None


class ABTestStatus(StrEnum):
    DESIGNING = "designing"
    RUNNING = "running"
    ANALYZING = "analyzing"
    CONCLUDED = "concluded"
    INCONCLUSIVE = "inconclusive"


class Direction(StrEnum):
    INCREASE = "increase"
    DECREASE = "decrease"


class Cohort(StrEnum):
    CONTROL = "control"
    TREATMENT = "treatment"


@dataclass(slots=True)
class Hypothesis:
    metric: str
    expected_direction: Direction
    expected_magnitude: float
    significance_level: float = 0.05


@dataclass(slots=True)
class StatisticalConfig:
    confidence_level: float = 0.95
    minimum_sample_size: int = 1000
    minimum_detectable_effect: float = 0.02
    power: float = 0.80


@dataclass(slots=True)
class HypothesisResult:
    metric: str
    control_mean: float
    treatment_mean: float
    relative_effect: float
    p_value: float
    significant: bool
    supports_hypothesis: bool


@dataclass(slots=True)
class ABResult:
    control_samples: int
    treatment_samples: int
    hypothesis_results: list[HypothesisResult] = field(default_factory=list)
    winner: Cohort | None = None


@dataclass(slots=True)
class ABTestSetup:
    """One controlled experiment between two model versions."""

    test_id: str
    control_version: str
    treatment_version: str
    paths: list[str]
    hypotheses: list[Hypothesis] = field(default_factory=list)
    statistics: StatisticalConfig = field(default_factory=StatisticalConfig)
    traffic_allocation: float = 100.0
    treatment_split: float = 50.0
    status: ABTestStatus = ABTestStatus.DESIGNING
    samples_collected: int = 0
    preliminary_results: ABResult | None = None
    final_results: ABResult | None = None
    winner: Cohort | None = None
    inconclusive_reason: str | None = None
    created_at: datetime = field(default_factory=now_utc)
    concluded_at: datetime | None = None

    def version_for(self, cohort: Cohort) -> str:
        return self.treatment_version if cohort == Cohort.TREATMENT else self.control_version


@dataclass(slots=True)
class ABAssignment:
    test_id: str
    user_id: str
    enrolled: bool
    cohort: Cohort | None = None
    model_version: str | None = None
    bucket: int | None = None
