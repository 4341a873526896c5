"""Governance orchestrator composing the registry, traffic splitter and rollback triggers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4
import logging
import threading

from canary_governance.analytics import MetricSignal, ModelMetrics
from canary_governance.audit import ActionScopePolicy, AuditLevel, AuditRouter
from canary_governance.config import ServiceConfig, ThresholdConfig
from canary_governance.errors import GovernanceError, NotFoundError, StateConflictError, ValidationError
from canary_governance.governance import (
    ABAssignment,
    ABTestSetup,
    CanaryTrafficSplitter,
    EvaluationMetric,
    GovernanceMetrics,
    Hypothesis,
    ModelGovernanceManager,
    RolloutStep,
    StatisticalConfig,
    StepCriterion,
)
from canary_governance.recovery import (
    ExecutionStatus,
    RollbackDecision,
    RollbackExecution,
    RollbackPlan,
    RollbackTriggerConfig,
    RollbackTriggerManager,
    recommended_actions,
)
from canary_governance.time_utils import now_utc, seconds_since
from canary_governance.types import (
    CanaryConfig,
    ConfidenceThreshold,
    FallbackKind,
    FallbackStrategy,
    ModelPerformance,
    ModelStatus,
    ModelVersion,
    Severity,
    ThresholdOwner,
    TriggerType,
)

from .step_handler import GovernanceStepHandler

logger = logging.getLogger(__name__)

COMPONENT = "orchestrator"

_SERVABLE_STATES = (ModelStatus.STABLE, ModelStatus.CANARY)


@dataclass(slots=True)
class RoutingDecision:
    """Everything a caller needs to serve one request, returned as one unit."""

    path: str
    request_id: str
    model_version: str | None
    is_canary: bool
    canary_percentage: float
    min_confidence: float
    escalation_threshold: float
    fallback: FallbackStrategy
    threshold_owner: ThresholdOwner
    reason: str
    rollout_id: str | None = None
    degraded: bool = False


@dataclass(slots=True)
class MetricsUpdateResult:
    model_version: str
    decision: RollbackDecision
    action: str
    plan: RollbackPlan | None = None
    execution: RollbackExecution | None = None


@dataclass(slots=True)
class GovernanceStatus:
    current_stable: str | None
    auto_rollback_enabled: bool
    metrics: GovernanceMetrics
    versions: list[dict[str, Any]] = field(default_factory=list)
    active_canaries: list[dict[str, Any]] = field(default_factory=list)
    ab_tests: list[dict[str, Any]] = field(default_factory=list)
    executions: list[dict[str, Any]] = field(default_factory=list)
    failed_rollbacks: list[dict[str, Any]] = field(default_factory=list)
    generated_at: datetime = field(default_factory=now_utc)


def _threshold_from_config(path: str, model_version: str, cfg: ThresholdConfig) -> ConfidenceThreshold:
    return ConfidenceThreshold(
        path=path,
        model_version=model_version,
        min_confidence=cfg.min_confidence,
        escalation_threshold=cfg.escalation_threshold,
        fallback=FallbackStrategy(FallbackKind(cfg.fallback), cfg.previous_version),
        owner=ThresholdOwner(cfg.owner),
        product_lead=cfg.product_lead,
        sre_oncall=cfg.sre_oncall,
    )


def _trigger_baseline(trigger_type: TriggerType, performance: ModelPerformance) -> float:
    return {
        TriggerType.LATENCY_DRIFT: performance.latency_p95_ms,
        TriggerType.ACCURACY_DROP: performance.accuracy,
        TriggerType.ERROR_RATE_SPIKE: performance.error_rate,
        TriggerType.CONFIDENCE_DROP: performance.confidence,
        TriggerType.THROUGHPUT_DROP: performance.throughput,
        TriggerType.MEMORY_LEAK: performance.memory_mb,
        TriggerType.CPU_SPIKE: performance.cpu_percent,
    }.get(trigger_type, 0.0)


class GovernanceOrchestrator:
    """Single entry point for deploy, route, ingest and rollback operations."""

    def __init__(
        self,
        config: ServiceConfig | None = None,
        governance: ModelGovernanceManager | None = None,
        splitter: CanaryTrafficSplitter | None = None,
        triggers: RollbackTriggerManager | None = None,
        audit: AuditRouter | None = None,
        scope_policy: ActionScopePolicy | None = None,
    ) -> None:
        self.config = config or ServiceConfig()
        self.audit = audit or AuditRouter.in_memory()
        self.governance = governance or ModelGovernanceManager(audit=self.audit)
        self.splitter = splitter or CanaryTrafficSplitter(audit=self.audit)
        self.triggers = triggers or RollbackTriggerManager(audit=self.audit)
        self.scope_policy = scope_policy or ActionScopePolicy.from_pairs(self.config.allowed_actions)
        self.step_handler = GovernanceStepHandler(self.governance, self.splitter, self.triggers, self.audit)
        self._lock = threading.RLock()
        self._last_auto_rollback: dict[str, datetime] = {}
        self._failed_rollbacks: list[dict[str, Any]] = []
        self._initialized = False

    @classmethod
    def from_config(cls, config: ServiceConfig) -> "GovernanceOrchestrator":
        audit = AuditRouter.from_config(
            file_path=config.audit.file_path,
            webhook_url=config.audit.webhook_url,
            log_events=config.audit.log_events,
        )
        orchestrator = cls(config=config, audit=audit)
        orchestrator.initialize()
        return orchestrator

    def _audit(self, action: str, subject_id: str, reason: str, **kwargs: Any) -> None:
        self.audit.emit(component=COMPONENT, action=action, subject_id=subject_id, reason=reason, **kwargs)

    def initialize(self) -> None:
        """Seed a path-wide confidence threshold for every known path."""
        with self._lock:
            for path in self.config.known_paths:
                cfg = self.config.path_thresholds.get(path, self.config.default_threshold)
                self.governance.set_confidence_threshold(_threshold_from_config(path, "*", cfg))
            self._initialized = True
            logger.info("Orchestrator initialized for paths %s", ", ".join(self.config.known_paths))

    def register_model(self, version: ModelVersion) -> ModelVersion:
        """Register a version and seed its rollback triggers from the configured templates."""
        with self._lock:
            if not self._initialized:
                self.initialize()
            record = self.governance.register_version(version)
            self.triggers.set_model_paths(record.version, record.paths)
            self.triggers.set_stable_version(self.governance.current_stable)
            self._seed_triggers(record)
            return record

    def _seed_triggers(self, record: ModelVersion) -> None:
        rule_thresholds = {rule.trigger_type: rule.threshold for rule in record.drift_rules}
        for template in self.config.triggers:
            trigger_type = TriggerType(template.trigger_type)
            baseline = _trigger_baseline(trigger_type, record.performance)
            if baseline <= 0 and trigger_type != TriggerType.ERROR_RATE_SPIKE:
                logger.debug("Skipping %s trigger for %s: no baseline", trigger_type, record.version)
                continue
            trigger_id = f"{record.version}:{trigger_type}"
            threshold = rule_thresholds.get(trigger_type, template.threshold)
            try:
                self.triggers.get_trigger(trigger_id)
            except NotFoundError:
                self.triggers.add_trigger(
                    RollbackTriggerConfig(
                        trigger_id=trigger_id,
                        model_version=record.version,
                        trigger_type=trigger_type,
                        baseline=baseline,
                        threshold=threshold,
                        evaluation_window_seconds=template.evaluation_window_seconds,
                        min_samples=template.min_samples,
                        consecutive_violations=template.consecutive_violations,
                        severity=Severity(template.severity),
                        description=f"default {trigger_type} trigger",
                    )
                )
            else:
                self.triggers.update_trigger(trigger_id, baseline=baseline, threshold=threshold)

    def _build_steps(self, performance: ModelPerformance, target_percentage: float) -> list[RolloutStep]:
        canary = self.config.canary
        schedule = [pct for pct in canary.schedule if pct < target_percentage] + [target_percentage]
        criteria = [
            StepCriterion(EvaluationMetric.LATENCY_P95, performance.latency_p95_ms * (1.0 + canary.latency_tolerance)),
            StepCriterion(EvaluationMetric.ERROR_RATE, performance.error_rate * (1.0 + canary.error_rate_tolerance)),
            StepCriterion(EvaluationMetric.CONFIDENCE, performance.confidence * (1.0 - canary.confidence_tolerance)),
        ]
        return [RolloutStep(pct, canary.step_duration_seconds, list(criteria)) for pct in schedule]

    def deploy_canary(
        self,
        version: str,
        target_percentage: float,
        paths: list[str] | None = None,
        steps: list[RolloutStep] | None = None,
        rollout_id: str | None = None,
    ) -> str:
        """Create and start a rollout, then mark the version as canary. Returns the rollout id."""
        if not 0.0 < target_percentage <= 100.0:
            raise ValidationError(f"Canary target percentage {target_percentage} outside (0, 100].")
        with self._lock:
            record = self.governance.get_version(version)
            serving = list(paths or record.paths)
            unknown = sorted(set(serving) - set(record.paths))
            if unknown:
                raise ValidationError(f"Version '{version}' does not serve paths {unknown}.")
            if record.status == ModelStatus.DEPRECATED or version == self.governance.current_stable:
                raise StateConflictError(f"Version '{version}' cannot be deployed as canary ({record.status}).")
            plan_steps = steps or self._build_steps(record.performance, target_percentage)
            rid = rollout_id or f"{version}-{uuid4().hex[:8]}"

            self.splitter.create_rollout(rid, version, plan_steps, serving)
            rollout = self.splitter.start_rollout(rid)
            canary_config = CanaryConfig(
                target_percentage=target_percentage,
                schedule=[step.target_percentage for step in plan_steps],
                increment_step=plan_steps[1].target_percentage - plan_steps[0].target_percentage
                if len(plan_steps) > 1
                else plan_steps[0].target_percentage,
                evaluation_window_seconds=self.config.canary.evaluation_window_seconds,
                rollout_id=rid,
            )
            try:
                self.governance.deploy_canary(version, canary_config)
            except GovernanceError:
                self.splitter.abort_rollout(rid, "governance rejected canary deployment")
                raise
            if self.splitter.is_circuit_open(version):
                # redeploying closes the version's circuit breaker
                self.splitter.reset_circuit_breaker(version)
                logger.info("Closed circuit breaker for %s on redeploy", version)
            self.governance.update_canary_percentage(version, rollout.current_percentage)
            self.triggers.set_model_paths(version, serving)
            logger.info("Deployed canary %s via rollout %s (target=%.1f%%)", version, rid, target_percentage)
            return rid

    def promote_to_stable(self, version: str) -> ModelVersion:
        """Make `version` stable and retire its rollouts so they stop claiming canary buckets."""
        with self._lock:
            record = self.governance.promote_to_stable(version)
            retired = self.splitter.mark_promoted(version)
            self.triggers.set_stable_version(version)
            if retired:
                logger.info("Retired rollouts %s after promoting %s", [r.rollout_id for r in retired], version)
            return record

    def set_confidence_threshold(self, threshold: ConfidenceThreshold) -> ConfidenceThreshold:
        if threshold.path not in self.config.known_paths:
            logger.warning("Confidence threshold set for unknown path %s", threshold.path)
        return self.governance.set_confidence_threshold(threshold)

    # Routing

    def _safe_default(self, path: str, request_id: str, reason: str) -> RoutingDecision:
        try:
            stable = self.governance.current_stable
        except Exception:  # pointer read must not break the fallback
            stable = None
        cfg = self.config.conservative_threshold
        return RoutingDecision(
            path=path,
            request_id=request_id,
            model_version=stable,
            is_canary=False,
            canary_percentage=0.0,
            min_confidence=cfg.min_confidence,
            escalation_threshold=cfg.escalation_threshold,
            fallback=FallbackStrategy(FallbackKind(cfg.fallback), cfg.previous_version),
            threshold_owner=ThresholdOwner(cfg.owner),
            reason=reason,
            degraded=True,
        )

    def get_routing_decision(self, path: str, request_id: str) -> RoutingDecision:
        """
        Resolve target version, canary percentage and confidence gate for one request.

        Never raises: any failure degrades to the last known stable version with
        the conservative confidence threshold.
        """
        try:
            return self._route(path, request_id)
        except Exception:  # routing must always produce a decision
            logger.exception("Routing failed for path=%s request=%s; serving safe default", path, request_id)
            return self._safe_default(path, request_id, "routing failure; safe default")

    def _route(self, path: str, request_id: str) -> RoutingDecision:
        stable = self.governance.current_stable
        canary = self.splitter.should_route_to_canary(path, request_id)
        version = stable
        is_canary = False
        reason = canary.routing_reason
        if canary.route_to_canary and canary.model_version is not None:
            if not self.scope_policy.allow("canary_splitter", "route_canary"):
                reason = "SCOPE_VIOLATION: canary routing not allow-listed; serving stable"
                self._audit("scope_downgrade", request_id, reason, level=AuditLevel.WARNING, details={"path": path})
                logger.warning("Downgraded canary routing for %s on %s: not allow-listed", request_id, path)
            elif self.governance.get_version(canary.model_version).status not in _SERVABLE_STATES:
                reason = f"canary {canary.model_version} not servable; serving stable"
            else:
                version = canary.model_version
                is_canary = True

        if version is None:
            return self._safe_default(path, request_id, "no stable version registered")

        threshold = self.governance.get_confidence_threshold(path, version)
        if threshold is None:
            threshold = _threshold_from_config(path, version, self.config.default_threshold)
        return RoutingDecision(
            path=path,
            request_id=request_id,
            model_version=version,
            is_canary=is_canary,
            canary_percentage=canary.percentage if is_canary else 0.0,
            min_confidence=threshold.min_confidence,
            escalation_threshold=threshold.escalation_threshold,
            fallback=threshold.fallback,
            threshold_owner=threshold.owner,
            reason=reason,
            rollout_id=canary.rollout_id if is_canary else None,
        )

    # Metrics and rollback

    def _observed_performance(self, version: str, baseline: ModelPerformance) -> ModelPerformance:
        def latest(signal: MetricSignal, default: float) -> float:
            value = self.triggers.latest_value(version, signal)
            return default if value is None else value

        return ModelPerformance(
            latency_p95_ms=latest(MetricSignal.LATENCY_P95, baseline.latency_p95_ms),
            latency_p99_ms=latest(MetricSignal.LATENCY_P99, baseline.latency_p99_ms),
            accuracy=latest(MetricSignal.ACCURACY, baseline.accuracy),
            error_rate=latest(MetricSignal.ERROR_RATE, baseline.error_rate),
            confidence=latest(MetricSignal.CONFIDENCE, baseline.confidence),
            throughput=latest(MetricSignal.THROUGHPUT, baseline.throughput),
            memory_mb=latest(MetricSignal.MEMORY, baseline.memory_mb),
            cpu_percent=latest(MetricSignal.CPU, baseline.cpu_percent),
        )

    def _skip(self, decision: RollbackDecision, action: str, reason: str) -> MetricsUpdateResult:
        self._audit(
            f"auto_rollback_{action}",
            decision.model_version,
            reason,
            level=AuditLevel.WARNING,
            severity=str(decision.severity) if decision.severity else None,
        )
        logger.warning("Auto-rollback for %s not executed (%s): %s", decision.model_version, action, reason)
        return MetricsUpdateResult(decision.model_version, decision, action)

    def update_model_metrics(self, version: str, metrics: ModelMetrics) -> MetricsUpdateResult:
        """
        Ingest a metric snapshot, evaluate triggers and roll back automatically when allowed.

        Rollback failures are recorded on the execution and in the governance
        status; they are never raised to the metrics feed.
        """
        with self._lock:
            record = self.governance.get_version(version)
            decision = self.triggers.update_metrics(version, metrics)
            self.governance.record_observed_performance(version, self._observed_performance(version, record.performance))
            if not decision.should_rollback:
                return MetricsUpdateResult(version, decision, "none")
            if not self.config.auto_rollback_enabled:
                return self._skip(decision, "disabled", "auto-rollback disabled by configuration")
            if decision.target_version is None:
                return self._skip(decision, "no_target", "no stable version to roll back to")
            if not self.scope_policy.allow("rollback_triggers", "auto_rollback"):
                return self._skip(decision, "scope_downgrade", "SCOPE_VIOLATION: auto rollback not allow-listed")
            elapsed = seconds_since(self._last_auto_rollback.get(version))
            if elapsed < self.config.rollback_cooldown_seconds:
                return self._skip(decision, "cooldown", f"last automatic rollback {elapsed:.0f}s ago")
            try:
                plan = self.triggers.create_rollback_plan(version, decision.target_version, decision)
            except GovernanceError as exc:
                self._failed_rollbacks.append(
                    {"model_version": version, "reason": str(exc), "at": now_utc().isoformat()}
                )
                logger.exception("Could not plan automatic rollback for %s", version)
                return MetricsUpdateResult(version, decision, "failed")
            self._last_auto_rollback[version] = now_utc()

        execution = self.triggers.execute_rollback_plan(plan, self.step_handler, self.config.step_timeout_scale)
        if execution.status != ExecutionStatus.COMPLETED:
            with self._lock:
                self._failed_rollbacks.append(
                    {"model_version": version, "execution_id": execution.execution_id, "reason": execution.status_reason}
                )
        logger.warning(
            "Automatic rollback %s -> %s finished with %s", version, plan.to_version, execution.status
        )
        return MetricsUpdateResult(version, decision, "rolled_back", plan, execution)

    def manual_rollback(self, from_version: str, to_version: str, reason: str) -> RollbackExecution:
        """Operator rollback; bypasses trigger evaluation and runs with HIGH severity."""
        if not reason:
            raise ValidationError("Manual rollback requires a reason.")
        if from_version == to_version:
            raise ValidationError(f"Cannot roll '{from_version}' back onto itself.")
        self.scope_policy.assert_allowed(COMPONENT, "manual_rollback")
        self.governance.get_version(from_version)
        self.governance.get_version(to_version)

        decision = RollbackDecision(
            model_version=from_version,
            should_rollback=True,
            reason=f"manual: {reason}",
            severity=Severity.HIGH,
            target_version=to_version,
            impact=self.triggers.assess_impact(from_version, Severity.HIGH),
            recommended_actions=recommended_actions(Severity.HIGH),
            manual=True,
        )
        plan = self.triggers.create_rollback_plan(from_version, to_version, decision)
        self._audit(
            "manual_rollback",
            from_version,
            reason,
            level=AuditLevel.WARNING,
            severity=str(Severity.HIGH),
            details={"to_version": to_version, "plan_id": plan.plan_id},
        )
        execution = self.triggers.execute_rollback_plan(plan, self.step_handler, self.config.step_timeout_scale)
        if execution.status != ExecutionStatus.COMPLETED:
            with self._lock:
                self._failed_rollbacks.append(
                    {"model_version": from_version, "execution_id": execution.execution_id, "reason": execution.status_reason}
                )
        return execution

    # A/B tests

    def setup_ab_test(
        self,
        test_id: str,
        control_version: str,
        treatment_version: str,
        paths: list[str],
        hypotheses: list[Hypothesis] | None = None,
        traffic_allocation: float | None = None,
        treatment_split: float | None = None,
    ) -> ABTestSetup:
        """Register and start an A/B test between two registered versions."""
        self.governance.get_version(control_version)
        self.governance.get_version(treatment_version)
        defaults = self.config.ab_testing
        setup = ABTestSetup(
            test_id=test_id,
            control_version=control_version,
            treatment_version=treatment_version,
            paths=list(paths),
            hypotheses=list(hypotheses or []),
            statistics=StatisticalConfig(
                confidence_level=defaults.confidence_level,
                minimum_sample_size=defaults.minimum_sample_size,
                minimum_detectable_effect=defaults.minimum_detectable_effect,
                power=defaults.power,
            ),
            traffic_allocation=defaults.traffic_allocation if traffic_allocation is None else traffic_allocation,
            treatment_split=defaults.treatment_split if treatment_split is None else treatment_split,
        )
        self.splitter.setup_ab_test(setup)
        return self.splitter.start_ab_test(test_id)

    def get_ab_test_assignment(self, test_id: str, user_id: str) -> ABAssignment:
        return self.splitter.get_ab_test_assignment(test_id, user_id)

    # Status

    def get_governance_status(self) -> GovernanceStatus:
        with self._lock:
            failed = list(self._failed_rollbacks)
        return GovernanceStatus(
            current_stable=self.governance.current_stable,
            auto_rollback_enabled=self.config.auto_rollback_enabled,
            metrics=self.governance.get_governance_metrics(),
            versions=[v.to_dict() for v in self.governance.list_versions()],
            active_canaries=[r.to_dict() for r in self.splitter.get_all_active_canaries()],
            ab_tests=[
                {"test_id": t.test_id, "status": str(t.status), "winner": str(t.winner) if t.winner else None}
                for t in self.splitter.list_ab_tests()
            ],
            executions=[e.to_dict() for e in self.triggers.list_executions()],
            failed_rollbacks=failed,
        )
