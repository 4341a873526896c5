"""Drift trigger evaluation, rollback decisions and rollback plans."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import replace
from datetime import datetime
from typing import Any
from uuid import uuid4
import logging
import threading

import pandas as pd

from canary_governance.analytics import (
    MetricDataPoint,
    MetricIngestionBuffer,
    MetricSignal,
    ModelMetrics,
    population_stability_index,
    relative_decrease,
    relative_increase,
    summarize_window,
)
from canary_governance.audit import AuditLevel, AuditRouter
from canary_governance.errors import NotFoundError, StateConflictError, ValidationError
from canary_governance.time_utils import now_utc
from canary_governance.types import Severity, TriggerType, max_severity

from .contracts import (
    CheckType,
    ImpactAssessment,
    RollbackDecision,
    RollbackExecution,
    RollbackPlan,
    RollbackStep,
    RollbackStrategy,
    RollbackTriggerConfig,
    StepAction,
    StrategyKind,
    TriggerEvaluation,
    VerificationCheck,
)
from .executor import RollbackStepHandler, run_plan

logger = logging.getLogger(__name__)

COMPONENT = "rollback_triggers"

TRIGGER_SIGNALS: dict[TriggerType, MetricSignal] = {
    TriggerType.LATENCY_DRIFT: MetricSignal.LATENCY_P95,
    TriggerType.ACCURACY_DROP: MetricSignal.ACCURACY,
    TriggerType.ERROR_RATE_SPIKE: MetricSignal.ERROR_RATE,
    TriggerType.CONFIDENCE_DROP: MetricSignal.CONFIDENCE,
    TriggerType.THROUGHPUT_DROP: MetricSignal.THROUGHPUT,
    TriggerType.MEMORY_LEAK: MetricSignal.MEMORY,
    TriggerType.CPU_SPIKE: MetricSignal.CPU,
    TriggerType.DATA_DRIFT: MetricSignal.CONFIDENCE,
}

# (users per affected path, allowed rollback seconds, data loss risk)
_IMPACT_BY_SEVERITY: dict[Severity, tuple[int, float, bool]] = {
    Severity.CRITICAL: (100_000, 60.0, True),
    Severity.HIGH: (25_000, 300.0, False),
    Severity.MEDIUM: (5_000, 900.0, False),
    Severity.LOW: (1_000, 1_800.0, False),
}


def select_strategy(severity: Severity) -> RollbackStrategy:
    if severity == Severity.CRITICAL:
        return RollbackStrategy(StrategyKind.IMMEDIATE, [100.0])
    if severity == Severity.HIGH:
        return RollbackStrategy(StrategyKind.GRADUAL, [50.0, 100.0], step_interval_seconds=30.0)
    if severity == Severity.MEDIUM:
        return RollbackStrategy(StrategyKind.GRADUAL, [25.0, 50.0, 100.0], step_interval_seconds=60.0)
    if severity == Severity.LOW:
        return RollbackStrategy(StrategyKind.CANARY_REVERSE, [75.0, 50.0, 25.0, 0.0], step_interval_seconds=120.0)
    raise ValidationError(f"Unsupported severity '{severity}'.")


def recommended_actions(severity: Severity) -> list[str]:
    actions = ["notify_model_owner", "capture_diagnostics_snapshot"]
    if severity == Severity.LOW:
        actions.append("schedule_review")
    if severity.rank >= Severity.MEDIUM.rank:
        actions.append("freeze_canary_promotion")
    if severity.rank >= Severity.HIGH.rank:
        actions.extend(["enable_circuit_breaker", "page_oncall_immediately"])
    if severity == Severity.CRITICAL:
        actions.extend(["halt_all_deployments", "open_incident"])
    return actions


def _build_steps(strategy: RollbackStrategy, severity: Severity, from_version: str, to_version: str) -> list[RollbackStep]:
    steps: list[RollbackStep] = []

    def add(action: StepAction, description: str, timeout: float, canary_percentage: float | None = None) -> None:
        steps.append(RollbackStep(len(steps), action, description, timeout, canary_percentage))

    if severity.rank >= Severity.HIGH.rank:
        add(StepAction.ENABLE_CIRCUIT_BREAKER, f"Open circuit breaker for {from_version}", 5.0)

    kind = strategy.kind
    if kind == StrategyKind.IMMEDIATE:
        add(StepAction.UPDATE_TRAFFIC_SPLIT, f"Route all traffic to {to_version}", 10.0, 0.0)
        add(StepAction.SWITCH_MODEL_VERSION, f"Switch {from_version} -> {to_version}", 10.0)
        add(StepAction.HEALTH_CHECK, f"Health check {to_version}", 15.0)
        add(StepAction.VALIDATE_METRICS, f"Validate metrics on {to_version}", 30.0)
        add(StepAction.NOTIFY_OPERATORS, "Notify operators of immediate rollback", 5.0)
    elif kind in (StrategyKind.GRADUAL, StrategyKind.CANARY_REVERSE):
        if kind == StrategyKind.GRADUAL:
            add(StepAction.NOTIFY_OPERATORS, "Announce gradual rollback", 5.0)
        for pct in strategy.canary_percentages():
            add(
                StepAction.UPDATE_TRAFFIC_SPLIT,
                f"Leave {pct:g}% on {from_version}",
                strategy.step_interval_seconds,
                pct,
            )
            add(StepAction.HEALTH_CHECK, f"Health check at {pct:g}% canary", 15.0)
        add(StepAction.SWITCH_MODEL_VERSION, f"Switch {from_version} -> {to_version}", 10.0)
        add(StepAction.VALIDATE_METRICS, f"Validate metrics on {to_version}", 30.0)
        if kind == StrategyKind.CANARY_REVERSE:
            add(StepAction.NOTIFY_OPERATORS, "Notify operators of completed canary reversal", 5.0)
    elif kind == StrategyKind.BLUE_GREEN:
        add(StepAction.HEALTH_CHECK, f"Warm up {to_version}", max(strategy.warmup_seconds, 15.0))
        add(StepAction.UPDATE_TRAFFIC_SPLIT, f"Cut over to {to_version}", 10.0, 0.0)
        add(StepAction.SWITCH_MODEL_VERSION, f"Switch {from_version} -> {to_version}", 10.0)
        add(StepAction.VALIDATE_METRICS, f"Validate metrics on {to_version}", 30.0)
        add(StepAction.NOTIFY_OPERATORS, "Notify operators of blue/green cut-over", 5.0)
    else:
        raise ValidationError(f"Unsupported strategy '{kind}'.")
    return steps


def _build_checks(severity: Severity) -> list[VerificationCheck]:
    """Thresholds are relative tolerances against the target's baseline, except traffic (max canary %)."""
    strict = severity.rank >= Severity.HIGH.rank
    checks = [
        VerificationCheck(CheckType.HEALTH_ENDPOINT, 1.0, mandatory=True),
        VerificationCheck(CheckType.TRAFFIC_DISTRIBUTION, 0.0, mandatory=True),
        VerificationCheck(CheckType.ERROR_RATE_CHECK, 0.5, mandatory=severity != Severity.LOW),
        VerificationCheck(CheckType.LATENCY_CHECK, 0.2, mandatory=severity != Severity.LOW),
    ]
    if severity != Severity.LOW:
        checks.append(VerificationCheck(CheckType.ACCURACY_CHECK, 0.05, mandatory=strict))
    return checks


class RollbackTriggerManager:
    """Evaluates drift triggers over the metric buffer and turns firings into rollback plans."""

    def __init__(self, audit: AuditRouter | None = None, buffer: MetricIngestionBuffer | None = None) -> None:
        self.audit = audit or AuditRouter.in_memory()
        self.buffer = buffer or MetricIngestionBuffer()
        self._lock = threading.RLock()
        self._triggers: dict[str, RollbackTriggerConfig] = {}
        self._violation_counts: dict[str, int] = {}
        self._stable_version: str | None = None
        self._model_paths: dict[str, list[str]] = {}
        self._plans: dict[str, RollbackPlan] = {}
        self._executions: dict[str, RollbackExecution] = {}

    def _audit(self, action: str, subject_id: str, reason: str, **kwargs: Any) -> None:
        self.audit.emit(component=COMPONENT, action=action, subject_id=subject_id, reason=reason, **kwargs)

    def _require(self, trigger_id: str) -> RollbackTriggerConfig:
        trigger = self._triggers.get(trigger_id)
        if trigger is None:
            raise NotFoundError(f"Unknown trigger '{trigger_id}'")
        return trigger

    # Trigger table

    def add_trigger(self, config: RollbackTriggerConfig) -> RollbackTriggerConfig:
        config.validate()
        with self._lock:
            if config.trigger_id in self._triggers:
                raise StateConflictError(f"Trigger '{config.trigger_id}' already exists.")
            stored = deepcopy(config)
            self._triggers[stored.trigger_id] = stored
            self._violation_counts[stored.trigger_id] = 0
            self._audit(
                "add_trigger",
                stored.trigger_id,
                f"{stored.trigger_type} > {stored.threshold:g} on {stored.model_version}",
                severity=str(stored.severity),
            )
            return deepcopy(stored)

    def update_trigger(self, trigger_id: str, **changes: Any) -> RollbackTriggerConfig:
        """Apply field changes; the updated config is validated before it replaces the old one."""
        for immutable in ("trigger_id", "created_at"):
            if immutable in changes:
                raise ValidationError(f"Field '{immutable}' cannot be updated.")
        with self._lock:
            current = self._require(trigger_id)
            try:
                updated = replace(current, **changes, updated_at=now_utc())
            except TypeError as exc:
                raise ValidationError(str(exc)) from exc
            updated.validate()
            self._triggers[trigger_id] = updated
            self._violation_counts[trigger_id] = 0
            self._audit("update_trigger", trigger_id, f"updated {sorted(changes)}")
            return deepcopy(updated)

    def disable_trigger(self, trigger_id: str) -> RollbackTriggerConfig:
        with self._lock:
            trigger = self._require(trigger_id)
            trigger.enabled = False
            trigger.updated_at = now_utc()
            self._violation_counts[trigger_id] = 0
            self._audit("disable_trigger", trigger_id, "disabled")
            return deepcopy(trigger)

    def enable_trigger(self, trigger_id: str) -> RollbackTriggerConfig:
        with self._lock:
            trigger = self._require(trigger_id)
            trigger.enabled = True
            trigger.updated_at = now_utc()
            self._audit("enable_trigger", trigger_id, "enabled")
            return deepcopy(trigger)

    def get_trigger(self, trigger_id: str) -> RollbackTriggerConfig:
        with self._lock:
            return deepcopy(self._require(trigger_id))

    def list_triggers(self, model_version: str | None = None) -> list[RollbackTriggerConfig]:
        with self._lock:
            return [
                deepcopy(t)
                for t in self._triggers.values()
                if model_version is None or t.model_version == model_version
            ]

    def violation_count(self, trigger_id: str) -> int:
        with self._lock:
            self._require(trigger_id)
            return self._violation_counts.get(trigger_id, 0)

    # Context used for targets and blast radius

    def set_stable_version(self, version: str | None) -> None:
        with self._lock:
            self._stable_version = version

    @property
    def stable_version(self) -> str | None:
        with self._lock:
            return self._stable_version

    def set_model_paths(self, version: str, paths: list[str]) -> None:
        with self._lock:
            self._model_paths[version] = list(paths)

    # Metrics

    def record_datapoint(
        self,
        version: str,
        signal: MetricSignal,
        value: float,
        timestamp: datetime | None = None,
    ) -> None:
        with self._lock:
            self.buffer.append(version, signal, MetricDataPoint(value=float(value), timestamp=timestamp or now_utc()))

    def latest_value(self, version: str, signal: MetricSignal) -> float | None:
        with self._lock:
            return self.buffer.latest(version, signal)

    def prune_metrics(self, older_than: datetime) -> int:
        with self._lock:
            return self.buffer.prune(older_than)

    def update_metrics(self, version: str, metrics: ModelMetrics) -> RollbackDecision:
        """Replace the stored series for `version` and evaluate its triggers immediately."""
        with self._lock:
            self.buffer.replace(version, metrics)
            return self.evaluate_triggers_for_model(version)

    def _observe(
        self,
        trigger: RollbackTriggerConfig,
        source: MetricIngestionBuffer,
    ) -> TriggerEvaluation:
        signal = TRIGGER_SIGNALS[trigger.trigger_type]
        window: pd.Series = source.window(trigger.model_version, signal, trigger.evaluation_window_seconds)
        evaluation = TriggerEvaluation(
            trigger_id=trigger.trigger_id,
            trigger_type=trigger.trigger_type,
            samples=len(window),
            baseline=trigger.baseline,
            window_stats=summarize_window(window),
        )
        if len(window) < trigger.min_samples:
            evaluation.skipped_reason = f"{len(window)} sample(s) < min {trigger.min_samples}"
            return evaluation

        kind = trigger.trigger_type
        if kind == TriggerType.DATA_DRIFT:
            observed = float(window.mean())
            drift = population_stability_index(trigger.reference_distribution or [], window)
        elif kind == TriggerType.MEMORY_LEAK:
            observed = float(window.iloc[-1])
            drift = relative_increase(observed, trigger.baseline)
        else:
            observed = float(window.mean())
            if kind in (TriggerType.LATENCY_DRIFT, TriggerType.ERROR_RATE_SPIKE, TriggerType.CPU_SPIKE):
                drift = relative_increase(observed, trigger.baseline)
            else:
                drift = relative_decrease(observed, trigger.baseline)
        evaluation.observed = observed
        evaluation.drift = drift
        evaluation.violated = drift > trigger.threshold
        return evaluation

    def evaluate_triggers_for_model(self, version: str, metrics: ModelMetrics | None = None) -> RollbackDecision:
        """
        Evaluate every enabled trigger for `version` and aggregate a decision.

        A violation only fires once the trigger's consecutive-violation count
        reaches `consecutive_violations`; a clean evaluation resets the count,
        as does firing. Evaluations without enough samples leave it untouched.
        """
        with self._lock:
            if metrics is None:
                source = self.buffer
            else:
                source = MetricIngestionBuffer()
                source.replace(version, metrics)

            evaluations: list[TriggerEvaluation] = []
            fired: list[tuple[RollbackTriggerConfig, TriggerEvaluation]] = []
            for trigger in self._triggers.values():
                if trigger.model_version != version or not trigger.enabled:
                    continue
                evaluation = self._observe(trigger, source)
                if evaluation.skipped_reason is None:
                    if evaluation.violated:
                        count = self._violation_counts.get(trigger.trigger_id, 0) + 1
                        if count >= trigger.consecutive_violations:
                            evaluation.fired = True
                            fired.append((trigger, evaluation))
                            count = 0
                        evaluation.consecutive_count = count if not evaluation.fired else trigger.consecutive_violations
                        self._violation_counts[trigger.trigger_id] = count
                    else:
                        self._violation_counts[trigger.trigger_id] = 0
                evaluations.append(evaluation)

            if not fired:
                pending = sum(1 for e in evaluations if e.violated)
                reason = f"{pending} violation(s) pending debounce" if pending else "no trigger fired"
                return RollbackDecision(model_version=version, should_rollback=False, reason=reason, evaluations=evaluations)

            severity = max_severity(t.severity for t, _ in fired)
            reason = "; ".join(
                f"{t.trigger_type} drift {e.drift:.2%} > {t.threshold:.2%} ({t.trigger_id})" for t, e in fired
            )
            target = self._stable_version if self._stable_version != version else None
            decision = RollbackDecision(
                model_version=version,
                should_rollback=True,
                reason=reason,
                triggered_by=[t.trigger_id for t, _ in fired],
                severity=severity,
                target_version=target,
                impact=self.assess_impact(version, severity),
                recommended_actions=recommended_actions(severity),
                evaluations=evaluations,
            )
            self._audit(
                "rollback_fired",
                version,
                reason,
                level=AuditLevel.CRITICAL if severity == Severity.CRITICAL else AuditLevel.WARNING,
                severity=str(severity),
                details={
                    "triggered_by": decision.triggered_by,
                    "target_version": target,
                    "windows": {t.trigger_id: e.window_stats for t, e in fired},
                },
            )
            logger.warning("Rollback triggers fired for %s (severity=%s): %s", version, severity, reason)
            return decision

    def assess_impact(self, version: str, severity: Severity) -> ImpactAssessment:
        """Blast radius grows and the allowed rollback time shrinks with severity."""
        users_per_path, seconds, data_loss = _IMPACT_BY_SEVERITY[severity]
        with self._lock:
            paths = list(self._model_paths.get(version, []))
        return ImpactAssessment(
            affected_paths=list(paths),
            estimated_affected_users=users_per_path * max(len(paths), 1),
            risk_level=severity,
            estimated_rollback_seconds=seconds,
            data_loss_risk=data_loss,
        )

    # Plans and executions

    def create_rollback_plan(
        self,
        from_version: str,
        to_version: str,
        decision: RollbackDecision,
        strategy: RollbackStrategy | None = None,
        rollback_on_failure: bool = True,
    ) -> RollbackPlan:
        if not from_version or not to_version:
            raise ValidationError("Rollback plan needs both source and target versions.")
        if from_version == to_version:
            raise ValidationError(f"Cannot roll '{from_version}' back onto itself.")
        if decision.severity is None:
            raise ValidationError("Rollback decision carries no severity.")
        chosen = strategy or select_strategy(decision.severity)
        steps = _build_steps(chosen, decision.severity, from_version, to_version)
        plan = RollbackPlan(
            plan_id=f"plan-{uuid4().hex[:12]}",
            from_version=from_version,
            to_version=to_version,
            strategy=chosen,
            steps=steps,
            verification_checks=_build_checks(decision.severity),
            severity=decision.severity,
            reason=decision.reason,
            estimated_duration_seconds=float(sum(s.timeout_seconds for s in steps)),
            rollback_on_failure=rollback_on_failure,
            triggered_by=list(decision.triggered_by),
        )
        with self._lock:
            self._plans[plan.plan_id] = plan
            self._audit(
                "create_rollback_plan",
                plan.plan_id,
                f"{chosen.kind} {from_version} -> {to_version}",
                severity=str(decision.severity),
                details={"steps": len(steps), "estimated_duration_seconds": plan.estimated_duration_seconds},
            )
        return deepcopy(plan)

    def execute_rollback_plan(
        self,
        plan: RollbackPlan,
        handler: RollbackStepHandler | None = None,
        timeout_scale: float = 1.0,
    ) -> RollbackExecution:
        """
        Record an IN_PROGRESS execution and, when a handler is supplied, apply the plan through it.

        The manager lock is not held while steps run, so handlers may call back
        into this manager.
        """
        execution = RollbackExecution(
            execution_id=f"exec-{uuid4().hex[:12]}",
            plan_id=plan.plan_id,
            from_version=plan.from_version,
            to_version=plan.to_version,
        )
        with self._lock:
            self._plans.setdefault(plan.plan_id, deepcopy(plan))
            self._executions[execution.execution_id] = deepcopy(execution)
        if handler is None:
            return execution

        finished = run_plan(plan, execution, handler, timeout_scale=timeout_scale)
        with self._lock:
            self._executions[finished.execution_id] = deepcopy(finished)
            self._audit(
                "execute_rollback_plan",
                finished.execution_id,
                finished.status_reason or str(finished.status),
                level=AuditLevel.INFO if finished.status == "completed" else AuditLevel.CRITICAL,
                severity=str(plan.severity),
                details=finished.to_dict(),
            )
        return finished

    def get_plan(self, plan_id: str) -> RollbackPlan:
        with self._lock:
            plan = self._plans.get(plan_id)
            if plan is None:
                raise NotFoundError(f"Unknown rollback plan '{plan_id}'")
            return deepcopy(plan)

    def get_execution(self, execution_id: str) -> RollbackExecution:
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                raise NotFoundError(f"Unknown rollback execution '{execution_id}'")
            return deepcopy(execution)

    def list_executions(self, from_version: str | None = None) -> list[RollbackExecution]:
        with self._lock:
            return [
                deepcopy(e)
                for e in self._executions.values()
                if from_version is None or e.from_version == from_version
            ]
