"""Contracts for drift triggers, rollback decisions, plans and executions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from canary_governance.errors import ValidationError
from canary_governance.time_utils import now_utc
from canary_governance.types import Severity, TriggerType


@dataclass(slots=True)
class RollbackTriggerConfig:
    """
    One drift trigger scoped to a model version.

    `baseline` is the reference value for the trigger's signal (p95 latency in
    ms, accuracy, error rate, confidence, throughput, memory MB or CPU %).
    DATA_DRIFT compares the confidence distribution with `reference_distribution`
    and uses `threshold` as the PSI limit.
    """

    trigger_id: str
    model_version: str
    trigger_type: TriggerType
    baseline: float
    threshold: float
    evaluation_window_seconds: float = 300.0
    min_samples: int = 1
    consecutive_violations: int = 1
    enabled: bool = True
    severity: Severity = Severity.MEDIUM
    owner: str = "sre"
    description: str = ""
    reference_distribution: list[float] | None = None
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)

    def validate(self) -> None:
        if not self.trigger_id:
            raise ValidationError("Trigger id must not be empty.")
        if not self.model_version:
            raise ValidationError(f"Trigger '{self.trigger_id}' must be scoped to a model version.")
        if self.threshold <= 0:
            raise ValidationError(f"Trigger '{self.trigger_id}' threshold must be positive.")
        if self.evaluation_window_seconds <= 0:
            raise ValidationError(f"Trigger '{self.trigger_id}' evaluation window must be positive.")
        if self.min_samples < 1:
            raise ValidationError(f"Trigger '{self.trigger_id}' needs min_samples >= 1.")
        if self.consecutive_violations < 1:
            raise ValidationError(f"Trigger '{self.trigger_id}' needs consecutive_violations >= 1.")
        if self.baseline < 0:
            raise ValidationError(f"Trigger '{self.trigger_id}' baseline must not be negative.")
        if self.trigger_type == TriggerType.DATA_DRIFT and not self.reference_distribution:
            raise ValidationError(f"Data drift trigger '{self.trigger_id}' needs a reference distribution.")


@dataclass(slots=True)
class TriggerEvaluation:
    trigger_id: str
    trigger_type: TriggerType
    samples: int
    observed: float = 0.0
    baseline: float = 0.0
    drift: float = 0.0
    violated: bool = False
    consecutive_count: int = 0
    fired: bool = False
    skipped_reason: str | None = None
    window_stats: dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class ImpactAssessment:
    affected_paths: list[str]
    estimated_affected_users: int
    risk_level: Severity
    estimated_rollback_seconds: float
    data_loss_risk: bool


@dataclass(slots=True)
class RollbackDecision:
    model_version: str
    should_rollback: bool
    reason: str
    triggered_by: list[str] = field(default_factory=list)
    severity: Severity | None = None
    target_version: str | None = None
    impact: ImpactAssessment | None = None
    recommended_actions: list[str] = field(default_factory=list)
    evaluations: list[TriggerEvaluation] = field(default_factory=list)
    manual: bool = False
    decided_at: datetime = field(default_factory=now_utc)


class StrategyKind(StrEnum):
    IMMEDIATE = "immediate"
    GRADUAL = "gradual"
    BLUE_GREEN = "blue_green"
    CANARY_REVERSE = "canary_reverse"


@dataclass(slots=True)
class RollbackStrategy:
    """
    How traffic leaves the failing version.

    For IMMEDIATE and GRADUAL, `traffic_steps` are percentages moved onto the
    rollback target; for CANARY_REVERSE they are what remains on the canary.
    """

    kind: StrategyKind
    traffic_steps: list[float] = field(default_factory=list)
    step_interval_seconds: float = 0.0
    warmup_seconds: float = 0.0

    def canary_percentages(self) -> list[float]:
        if self.kind == StrategyKind.CANARY_REVERSE:
            return list(self.traffic_steps)
        return [100.0 - pct for pct in self.traffic_steps]


class StepAction(StrEnum):
    UPDATE_TRAFFIC_SPLIT = "update_traffic_split"
    SWITCH_MODEL_VERSION = "switch_model_version"
    ENABLE_CIRCUIT_BREAKER = "enable_circuit_breaker"
    NOTIFY_OPERATORS = "notify_operators"
    HEALTH_CHECK = "health_check"
    VALIDATE_METRICS = "validate_metrics"


@dataclass(slots=True)
class RollbackStep:
    index: int
    action: StepAction
    description: str
    timeout_seconds: float
    canary_percentage: float | None = None


class CheckType(StrEnum):
    LATENCY_CHECK = "latency_check"
    ERROR_RATE_CHECK = "error_rate_check"
    ACCURACY_CHECK = "accuracy_check"
    HEALTH_ENDPOINT = "health_endpoint"
    TRAFFIC_DISTRIBUTION = "traffic_distribution"


@dataclass(slots=True)
class VerificationCheck:
    check_type: CheckType
    threshold: float
    mandatory: bool = True


@dataclass(slots=True)
class VerificationResult:
    check_type: CheckType
    passed: bool
    mandatory: bool
    observed: float | None = None
    threshold: float | None = None
    detail: str = ""


@dataclass(slots=True)
class RollbackPlan:
    plan_id: str
    from_version: str
    to_version: str
    strategy: RollbackStrategy
    steps: list[RollbackStep]
    verification_checks: list[VerificationCheck]
    severity: Severity
    reason: str
    estimated_duration_seconds: float
    rollback_on_failure: bool = True
    triggered_by: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=now_utc)


class ExecutionStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIALLY_COMPLETED = "partially_completed"


@dataclass(slots=True)
class RollbackExecution:
    execution_id: str
    plan_id: str
    from_version: str
    to_version: str
    status: ExecutionStatus = ExecutionStatus.IN_PROGRESS
    status_reason: str | None = None
    failed_step: int | None = None
    steps_completed: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    verification_results: list[VerificationResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=now_utc)
    completed_at: datetime | None = None

    @property
    def finished(self) -> bool:
        return self.status != ExecutionStatus.IN_PROGRESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "plan_id": self.plan_id,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "status": str(self.status),
            "status_reason": self.status_reason,
            "failed_step": self.failed_step,
            "steps_completed": list(self.steps_completed),
            "errors": list(self.errors),
            "verification": [
                {"check": str(r.check_type), "passed": r.passed, "mandatory": r.mandatory, "detail": r.detail}
                for r in self.verification_results
            ],
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
