"""Model version registry with canary bookkeeping, promotion and rollback."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any
import logging
import threading

from canary_governance.analytics.drift import relative_decrease, relative_increase
from canary_governance.audit import AuditLevel, AuditRouter
from canary_governance.errors import NotFoundError, StateConflictError, ValidationError
from canary_governance.time_utils import now_utc
from canary_governance.types import (
    CanaryConfig,
    ConfidenceThreshold,
    DriftRule,
    ModelPerformance,
    ModelStatus,
    ModelVersion,
    RollbackEvent,
    ThresholdOverride,
    ThresholdOwner,
    TriggerType,
)

logger = logging.getLogger(__name__)

COMPONENT = "model_governance"


@dataclass(slots=True)
class TrafficSplitResult:
    """Split between the stable pointer and at most one canary for a path."""

    path: str
    stable_version: str | None
    canary_version: str | None = None
    canary_percentage: float = 0.0

    @property
    def stable_only(self) -> bool:
        return self.canary_version is None


@dataclass(slots=True)
class GovernanceMetrics:
    total_versions: int
    status_counts: dict[str, int] = field(default_factory=dict)
    total_rollbacks: int = 0
    active_overrides: int = 0
    current_stable: str | None = None


def _drift_for(rule: DriftRule, baseline: ModelPerformance, current: ModelPerformance) -> float:
    kind = rule.trigger_type
    if kind == TriggerType.LATENCY_DRIFT:
        return relative_increase(current.latency_p95_ms, baseline.latency_p95_ms)
    if kind == TriggerType.ACCURACY_DROP:
        return relative_decrease(current.accuracy, baseline.accuracy)
    if kind == TriggerType.ERROR_RATE_SPIKE:
        return relative_increase(current.error_rate, baseline.error_rate)
    if kind == TriggerType.CONFIDENCE_DROP:
        return relative_decrease(current.confidence, baseline.confidence)
    if kind == TriggerType.THROUGHPUT_DROP:
        return relative_decrease(current.throughput, baseline.throughput)
    if kind == TriggerType.MEMORY_LEAK:
        return relative_increase(current.memory_mb, baseline.memory_mb)
    if kind == TriggerType.CPU_SPIKE:
        return relative_increase(current.cpu_percent, baseline.cpu_percent)
    if kind == TriggerType.DATA_DRIFT:
        # Snapshots carry no distribution; confidence shift is the closest proxy.
        return abs(relative_decrease(current.confidence, baseline.confidence))
    raise ValidationError(f"Unsupported trigger type '{kind}'.")


class ModelGovernanceManager:
    """In-memory version registry; every public call runs under one lock."""

    def __init__(self, audit: AuditRouter | None = None) -> None:
        self.audit = audit or AuditRouter.in_memory()
        self._lock = threading.RLock()
        self._versions: dict[str, ModelVersion] = {}
        self._history: dict[str, list[RollbackEvent]] = {}
        self._thresholds: dict[tuple[str, str], ConfidenceThreshold] = {}
        self._overrides: dict[tuple[str, str], ThresholdOverride] = {}
        self._current_stable: str | None = None

    def _audit(self, action: str, subject_id: str, reason: str, **kwargs: Any) -> None:
        self.audit.emit(component=COMPONENT, action=action, subject_id=subject_id, reason=reason, **kwargs)

    def _require(self, version: str) -> ModelVersion:
        record = self._versions.get(version)
        if record is None:
            raise NotFoundError(f"Unknown model version '{version}'")
        return record

    def _set_status(self, record: ModelVersion, status: ModelStatus, reason: str | None) -> None:
        record.status = status
        record.status_reason = reason
        record.status_changed_at = now_utc()

    @property
    def current_stable(self) -> str | None:
        with self._lock:
            return self._current_stable

    def register_version(self, version: ModelVersion) -> ModelVersion:
        """
        Store (or overwrite) a version; a STABLE registration claims an empty stable pointer.

        At most one record is STABLE: a STABLE registration while another version
        holds the pointer is stored as MAINTENANCE, and the pointer holder cannot
        be re-registered with any other status. Re-registration keeps the
        version's rollback history.
        """
        if not version.version:
            raise ValidationError("Model version string must not be empty.")
        if not version.paths:
            raise ValidationError(f"Model version '{version.version}' must serve at least one path.")
        if not 0.0 <= version.canary_percentage <= 100.0:
            raise ValidationError(
                f"Canary percentage {version.canary_percentage} outside [0, 100] for '{version.version}'."
            )
        for rule in version.drift_rules:
            if rule.threshold <= 0:
                raise ValidationError(f"Drift rule threshold must be positive ({rule.trigger_type}).")
        with self._lock:
            record = deepcopy(version)
            holder = self._current_stable
            if holder == record.version and record.status != ModelStatus.STABLE:
                raise StateConflictError(
                    f"Version '{record.version}' holds the stable pointer and cannot be re-registered as {record.status}."
                )
            if record.status == ModelStatus.STABLE and holder not in (None, record.version):
                self._set_status(record, ModelStatus.MAINTENANCE, f"stable pointer held by {holder}")
                record.canary_percentage = 0.0
                logger.warning("Registered %s as maintenance: %s is already stable", record.version, holder)
            self._versions[record.version] = record
            self._history.setdefault(record.version, [])
            if record.status == ModelStatus.STABLE:
                self._current_stable = record.version
                record.canary_percentage = 100.0
            self._audit(
                "register_version",
                record.version,
                f"registered with status {record.status}",
                details={"paths": list(record.paths), "owner": record.metadata.owner},
            )
            logger.info("Registered model version %s (status=%s)", record.version, record.status)
            return deepcopy(record)

    def get_version(self, version: str) -> ModelVersion:
        with self._lock:
            return deepcopy(self._require(version))

    def list_versions(self) -> list[ModelVersion]:
        with self._lock:
            return [deepcopy(v) for v in self._versions.values()]

    def get_rollback_history(self, version: str) -> list[RollbackEvent]:
        with self._lock:
            self._require(version)
            return deepcopy(self._history.get(version, []))

    def deploy_canary(self, version: str, config: CanaryConfig) -> ModelVersion:
        if not 0.0 < config.target_percentage <= 100.0:
            raise ValidationError(f"Canary target percentage {config.target_percentage} outside (0, 100].")
        with self._lock:
            record = self._require(version)
            if record.status == ModelStatus.DEPRECATED:
                raise StateConflictError(f"Cannot deploy deprecated version '{version}' as canary.")
            if version == self._current_stable:
                raise StateConflictError(f"Version '{version}' is already the stable version.")
            self._set_status(record, ModelStatus.CANARY, f"canary to {config.target_percentage:g}%")
            record.canary_percentage = config.target_percentage
            record.canary_config = deepcopy(config)
            self._audit(
                "deploy_canary",
                version,
                f"canary deployed targeting {config.target_percentage:g}%",
                details={"rollout_id": config.rollout_id, "schedule": list(config.schedule)},
            )
            return deepcopy(record)

    def update_canary_percentage(self, version: str, percentage: float) -> None:
        """Mirror the live canary percentage driven by the traffic splitter."""
        if not 0.0 <= percentage <= 100.0:
            raise ValidationError(f"Canary percentage {percentage} outside [0, 100].")
        with self._lock:
            record = self._require(version)
            if record.status == ModelStatus.CANARY:
                record.canary_percentage = percentage

    def promote_to_stable(self, version: str) -> ModelVersion:
        with self._lock:
            record = self._require(version)
            if record.status == ModelStatus.DEPRECATED:
                raise StateConflictError(f"Cannot promote deprecated version '{version}'.")
            previous = self._current_stable
            if previous is not None and previous != version and previous in self._versions:
                superseded = self._versions[previous]
                self._set_status(superseded, ModelStatus.MAINTENANCE, f"superseded by {version}")
                superseded.canary_percentage = 0.0
            self._current_stable = version
            self._set_status(record, ModelStatus.STABLE, "promoted to stable")
            record.canary_percentage = 100.0
            self._audit(
                "promote_to_stable",
                version,
                "promoted to stable",
                details={"previous_stable": previous},
            )
            logger.info("Promoted %s to stable (previous=%s)", version, previous)
            return deepcopy(record)

    def record_observed_performance(self, version: str, snapshot: ModelPerformance) -> None:
        with self._lock:
            self._require(version).observed_performance = deepcopy(snapshot)

    def evaluate_rollback_triggers(self, version: str, current: ModelPerformance) -> DriftRule | None:
        """Return the first drift rule violated against the version's own baseline, if any."""
        with self._lock:
            record = self._require(version)
            for rule in record.drift_rules:
                drift = _drift_for(rule, record.performance, current)
                if drift > rule.threshold:
                    logger.info("Drift rule %s violated for %s (drift=%.4f)", rule.trigger_type, version, drift)
                    return deepcopy(rule)
            return None

    def execute_rollback(
        self,
        version: str,
        reason: str,
        trigger: DriftRule | None = None,
        target_version: str | None = None,
    ) -> RollbackEvent:
        """
        Move `version` into ROLLBACK and hand its traffic to `target_version`.

        The target defaults to the stable pointer. When the rolled-back version
        held the pointer, the target becomes the new stable version.
        """
        with self._lock:
            record = self._require(version)
            target = target_version or self._current_stable
            if target is None:
                raise StateConflictError(f"No stable version available to roll '{version}' back to.")
            if target == version:
                raise StateConflictError(f"Cannot rollback stable version '{version}' without an alternative.")
            target_record = self._require(target)
            if target_record.status == ModelStatus.DEPRECATED:
                raise StateConflictError(f"Rollback target '{target}' is deprecated.")

            self._set_status(record, ModelStatus.ROLLBACK, reason)
            record.canary_percentage = 0.0
            if self._current_stable in (None, version):
                self._current_stable = target
                self._set_status(target_record, ModelStatus.STABLE, f"rollback target for {version}")
                target_record.canary_percentage = 100.0
            event = RollbackEvent(
                version=version,
                reason=reason,
                target_version=target,
                trigger_type=trigger.trigger_type if trigger else None,
            )
            self._history.setdefault(version, []).append(event)
            self._audit(
                "execute_rollback",
                version,
                reason,
                level=AuditLevel.WARNING,
                details={"target_version": target, "trigger": str(event.trigger_type) if event.trigger_type else None},
            )
            logger.warning("Rolled back %s to %s: %s", version, target, reason)
            return deepcopy(event)

    def set_maintenance(self, version: str, reason: str) -> ModelVersion:
        with self._lock:
            record = self._require(version)
            if version == self._current_stable:
                raise StateConflictError(f"Cannot put stable version '{version}' into maintenance.")
            self._set_status(record, ModelStatus.MAINTENANCE, reason)
            record.canary_percentage = 0.0
            self._audit("set_maintenance", version, reason)
            return deepcopy(record)

    def deprecate_version(self, version: str, replacement: str) -> ModelVersion:
        with self._lock:
            record = self._require(version)
            self._require(replacement)
            if version == replacement:
                raise ValidationError("A version cannot replace itself.")
            if version == self._current_stable:
                raise StateConflictError(f"Cannot deprecate the current stable version '{version}'.")
            self._set_status(record, ModelStatus.DEPRECATED, f"replaced by {replacement}")
            record.replacement_version = replacement
            record.canary_percentage = 0.0
            self._audit("deprecate_version", version, f"replaced by {replacement}")
            return deepcopy(record)

    def set_confidence_threshold(self, threshold: ConfidenceThreshold) -> ConfidenceThreshold:
        if not threshold.path:
            raise ValidationError("Threshold path must not be empty.")
        if not 0.0 <= threshold.escalation_threshold <= threshold.min_confidence <= 1.0:
            raise ValidationError(
                "Thresholds must satisfy 0 <= escalation_threshold <= min_confidence <= 1 "
                f"(got {threshold.escalation_threshold}, {threshold.min_confidence})."
            )
        with self._lock:
            stored = deepcopy(threshold)
            stored.updated_at = now_utc()
            self._thresholds[(stored.path, stored.model_version)] = stored
            self._audit(
                "set_confidence_threshold",
                f"{stored.path}:{stored.model_version}",
                f"min={stored.min_confidence} escalation={stored.escalation_threshold}",
                confidence=stored.min_confidence,
                details={"owner": str(stored.owner), "fallback": stored.fallback.describe()},
            )
            return deepcopy(stored)

    def get_confidence_threshold(self, path: str, model_version: str) -> ConfidenceThreshold | None:
        """Exact (path, version) match first, then the path-wide '*' entry; active overrides apply."""
        with self._lock:
            found = self._thresholds.get((path, model_version)) or self._thresholds.get((path, "*"))
            if found is None:
                return None
            out = deepcopy(found)
            override = self._overrides.get((path, model_version)) or self._overrides.get((path, "*"))
            if override is not None:
                out.min_confidence = override.min_confidence
                out.escalation_threshold = min(out.escalation_threshold, override.min_confidence)
            return out

    def update_threshold_ownership(
        self,
        path: str,
        model_version: str,
        owner: ThresholdOwner,
        product_lead: str | None = None,
        sre_oncall: str | None = None,
    ) -> ConfidenceThreshold:
        with self._lock:
            threshold = self._thresholds.get((path, model_version))
            if threshold is None:
                raise NotFoundError(f"No confidence threshold for ({path}, {model_version})")
            threshold.owner = owner
            if product_lead is not None:
                threshold.product_lead = product_lead
            if sre_oncall is not None:
                threshold.sre_oncall = sre_oncall
            threshold.updated_at = now_utc()
            self._audit("update_threshold_ownership", f"{path}:{model_version}", f"owner={owner}")
            return deepcopy(threshold)

    def enable_threshold_override(self, override: ThresholdOverride) -> ThresholdOverride:
        if not 0.0 <= override.min_confidence <= 1.0:
            raise ValidationError(f"Override confidence {override.min_confidence} outside [0, 1].")
        if not override.reason:
            raise ValidationError("Threshold override requires a reason.")
        key = (override.path, override.model_version)
        with self._lock:
            if key not in self._thresholds:
                raise NotFoundError(f"No confidence threshold for ({override.path}, {override.model_version})")
            if key in self._overrides:
                raise StateConflictError(f"Override already enabled for ({override.path}, {override.model_version}).")
            self._overrides[key] = deepcopy(override)
            self._audit(
                "enable_threshold_override",
                f"{override.path}:{override.model_version}",
                override.reason,
                level=AuditLevel.WARNING,
                confidence=override.min_confidence,
                details={"enabled_by": override.enabled_by},
            )
            return deepcopy(override)

    def disable_threshold_override(self, path: str, model_version: str, actor: str) -> ThresholdOverride:
        with self._lock:
            override = self._overrides.pop((path, model_version), None)
            if override is None:
                raise StateConflictError(f"No override enabled for ({path}, {model_version}).")
            self._audit("disable_threshold_override", f"{path}:{model_version}", f"disabled by {actor}")
            return override

    def get_traffic_split(self, path: str) -> TrafficSplitResult:
        with self._lock:
            for record in self._versions.values():
                if path in record.paths and record.status == ModelStatus.CANARY:
                    return TrafficSplitResult(
                        path=path,
                        stable_version=self._current_stable,
                        canary_version=record.version,
                        canary_percentage=record.canary_percentage,
                    )
            return TrafficSplitResult(path=path, stable_version=self._current_stable)

    def get_governance_metrics(self) -> GovernanceMetrics:
        with self._lock:
            counts: dict[str, int] = {str(status): 0 for status in ModelStatus}
            for record in self._versions.values():
                counts[str(record.status)] += 1
            return GovernanceMetrics(
                total_versions=len(self._versions),
                status_counts=counts,
                total_rollbacks=sum(len(events) for events in self._history.values()),
                active_overrides=len(self._overrides),
                current_stable=self._current_stable,
            )
