"""Core domain datatypes."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Iterable

from canary_governance.time_utils import now_utc


class ModelStatus(StrEnum):
    STABLE = "stable"
    CANARY = "canary"
    ROLLBACK = "rollback"
    MAINTENANCE = "maintenance"
    DEPRECATED = "deprecated"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


def max_severity(values: Iterable[Severity]) -> Severity:
    """Return the worst severity in `values`; raises ValueError when empty, like `max`."""
    return max(values, key=lambda value: value.rank)


class TriggerType(StrEnum):
    LATENCY_DRIFT = "latency_drift"
    ACCURACY_DROP = "accuracy_drop"
    ERROR_RATE_SPIKE = "error_rate_spike"
    CONFIDENCE_DROP = "confidence_drop"
    THROUGHPUT_DROP = "throughput_drop"
    MEMORY_LEAK = "memory_leak"
    CPU_SPIKE = "cpu_spike"
    DATA_DRIFT = "data_drift"


class FallbackKind(StrEnum):
    DETERMINISTIC_RULES = "deterministic_rules"
    PREVIOUS_MODEL = "previous_model"
    HUMAN_APPROVAL = "human_approval"
    BLOCK_TRANSACTION = "block_transaction"


class ThresholdOwner(StrEnum):
    PRODUCT = "product"
    SRE = "sre"
    JOINT = "joint"


@dataclass(slots=True)
class ModelPerformance:
    """Performance snapshot; used both as recorded baseline and as observed metrics."""

    latency_p95_ms: float
    latency_p99_ms: float
    accuracy: float
    error_rate: float
    confidence: float
    throughput: float
    memory_mb: float = 0.0
    cpu_percent: float = 0.0
    measured_at: datetime = field(default_factory=now_utc)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["measured_at"] = self.measured_at.isoformat()
        return out


@dataclass(slots=True)
class ModelMetadata:
    owner: str
    training_data_hash: str = ""
    config_hash: str = ""
    approved_by: str | None = None
    reviewed_at: datetime | None = None
    description: str = ""


@dataclass(slots=True)
class DriftRule:
    """A relative drift rule evaluated against the version's own baseline."""

    trigger_type: TriggerType
    threshold: float


@dataclass(slots=True)
class CanaryConfig:
    """Canary configuration recorded on the version when a canary is deployed."""

    target_percentage: float
    schedule: list[float]
    increment_step: float
    evaluation_window_seconds: float
    rollout_id: str | None = None
    ab_test_id: str | None = None


@dataclass(slots=True)
class ModelVersion:
    """One deployable artifact and its governance state."""

    version: str
    paths: list[str]
    performance: ModelPerformance
    metadata: ModelMetadata
    drift_rules: list[DriftRule] = field(default_factory=list)
    status: ModelStatus = ModelStatus.MAINTENANCE
    status_reason: str | None = "awaiting deployment"
    status_changed_at: datetime = field(default_factory=now_utc)
    canary_percentage: float = 0.0
    replacement_version: str | None = None
    canary_config: CanaryConfig | None = None
    observed_performance: ModelPerformance | None = None
    deployed_at: datetime = field(default_factory=now_utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "paths": list(self.paths),
            "status": str(self.status),
            "status_reason": self.status_reason,
            "status_changed_at": self.status_changed_at.isoformat(),
            "canary_percentage": self.canary_percentage,
            "replacement_version": self.replacement_version,
            "owner": self.metadata.owner,
            "performance": self.performance.to_dict(),
            "observed_performance": self.observed_performance.to_dict() if self.observed_performance else None,
        }


@dataclass(slots=True)
class FallbackStrategy:
    kind: FallbackKind
    previous_version: str | None = None

    def describe(self) -> str:
        if self.kind == FallbackKind.PREVIOUS_MODEL:
            return f"{self.kind}:{self.previous_version}"
        return str(self.kind)


@dataclass(slots=True)
class ConfidenceThreshold:
    """Confidence gate keyed by (path, model_version); '*' is the path-wide default."""

    path: str
    model_version: str
    min_confidence: float
    escalation_threshold: float
    fallback: FallbackStrategy
    owner: ThresholdOwner = ThresholdOwner.JOINT
    product_lead: str | None = None
    sre_oncall: str | None = None
    updated_at: datetime = field(default_factory=now_utc)


@dataclass(slots=True)
class ThresholdOverride:
    path: str
    model_version: str
    min_confidence: float
    reason: str
    enabled_by: str
    enabled_at: datetime = field(default_factory=now_utc)


@dataclass(slots=True)
class RollbackEvent:
    version: str
    reason: str
    target_version: str
    trigger_type: TriggerType | None = None
    occurred_at: datetime = field(default_factory=now_utc)
