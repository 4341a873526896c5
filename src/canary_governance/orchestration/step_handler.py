"""Rollback step primitives applied through the governance manager and traffic splitter."""

from __future__ import annotations

import logging
import threading

from canary_governance.analytics import MetricSignal, relative_decrease, relative_increase
from canary_governance.audit import AuditLevel, AuditRouter
from canary_governance.errors import StateConflictError
from canary_governance.governance import CanaryTrafficSplitter, ModelGovernanceManager, Rollout
from canary_governance.governance.contracts import LIVE_ROLLOUT_STATES
from canary_governance.recovery import (
    CheckType,
    RollbackPlan,
    RollbackStep,
    RollbackStepHandler,
    RollbackTriggerManager,
    StepAction,
    VerificationCheck,
    VerificationResult,
)
from canary_governance.types import ModelStatus, Severity

logger = logging.getLogger(__name__)

COMPONENT = "orchestrator"

_SERVABLE_STATES = (ModelStatus.STABLE, ModelStatus.CANARY)
# Error rate of the rollback target may at most double its baseline before the plan is stopped.
_VALIDATE_ERROR_RATE_TOLERANCE = 1.0


class GovernanceStepHandler(RollbackStepHandler):
    """
    Applies rollback steps by calling the same primitives operators use.

    The trigger manager never touches the splitter itself; this handler is the
    only place where a plan reaches traffic and version state.
    """

    def __init__(
        self,
        governance: ModelGovernanceManager,
        splitter: CanaryTrafficSplitter,
        triggers: RollbackTriggerManager,
        audit: AuditRouter,
    ) -> None:
        self.governance = governance
        self.splitter = splitter
        self.triggers = triggers
        self.audit = audit

    def _live_rollouts(self, version: str) -> list[Rollout]:
        return [r for r in self.splitter.list_rollouts(version) if r.status in LIVE_ROLLOUT_STATES]

    @staticmethod
    def _ensure_live(step: RollbackStep, cancelled: threading.Event) -> None:
        if cancelled.is_set():
            raise StateConflictError(f"Step {step.index} ({step.action}) cancelled after its timeout.")

    def run_step(self, plan: RollbackPlan, step: RollbackStep, cancelled: threading.Event) -> None:
        action = step.action
        if action == StepAction.UPDATE_TRAFFIC_SPLIT:
            percentage = step.canary_percentage if step.canary_percentage is not None else 0.0
            # A rollback only ever takes traffic away from the failing version.
            for rollout in self._live_rollouts(plan.from_version):
                if percentage < rollout.current_percentage:
                    self._ensure_live(step, cancelled)
                    self.splitter.update_traffic_percentage(rollout.rollout_id, percentage)
            record = self.governance.get_version(plan.from_version)
            if percentage < record.canary_percentage:
                self._ensure_live(step, cancelled)
                self.governance.update_canary_percentage(plan.from_version, percentage)
        elif action == StepAction.SWITCH_MODEL_VERSION:
            self._ensure_live(step, cancelled)
            self.governance.execute_rollback(plan.from_version, plan.reason, target_version=plan.to_version)
            for rollout in self._live_rollouts(plan.from_version):
                self.splitter.mark_rolled_back(rollout.rollout_id, plan.reason)
            self.triggers.set_stable_version(self.governance.current_stable)
        elif action == StepAction.ENABLE_CIRCUIT_BREAKER:
            self._ensure_live(step, cancelled)
            self.splitter.trip_circuit_breaker(plan.from_version, plan.reason)
        elif action == StepAction.NOTIFY_OPERATORS:
            self._ensure_live(step, cancelled)
            self.audit.emit(
                component=COMPONENT,
                action="notify_operators",
                subject_id=plan.plan_id,
                reason=step.description,
                level=AuditLevel.CRITICAL if plan.severity == Severity.CRITICAL else AuditLevel.WARNING,
                severity=str(plan.severity),
                details={"from_version": plan.from_version, "to_version": plan.to_version, "reason": plan.reason},
            )
        elif action == StepAction.HEALTH_CHECK:
            status = self.governance.get_version(plan.to_version).status
            if status in (ModelStatus.DEPRECATED, ModelStatus.ROLLBACK):
                raise StateConflictError(f"Rollback target '{plan.to_version}' is unhealthy ({status}).")
        elif action == StepAction.VALIDATE_METRICS:
            baseline = self.governance.get_version(plan.to_version).performance
            latest = self.triggers.latest_value(plan.to_version, MetricSignal.ERROR_RATE)
            if latest is not None and relative_increase(latest, baseline.error_rate) > _VALIDATE_ERROR_RATE_TOLERANCE:
                raise StateConflictError(
                    f"Rollback target '{plan.to_version}' error rate {latest:.4f} exceeds baseline {baseline.error_rate:.4f}."
                )
        else:
            raise StateConflictError(f"Unsupported rollback step '{action}'.")
        logger.info("Rollback plan %s step %d applied: %s", plan.plan_id, step.index, step.description)

    def verify(self, plan: RollbackPlan, check: VerificationCheck) -> VerificationResult:
        kind = check.check_type
        if kind == CheckType.HEALTH_ENDPOINT:
            status = self.governance.get_version(plan.to_version).status
            healthy = status in _SERVABLE_STATES
            return VerificationResult(
                kind, healthy, check.mandatory, 1.0 if healthy else 0.0, check.threshold, f"target status {status}"
            )
        if kind == CheckType.TRAFFIC_DISTRIBUTION:
            remaining = [
                r.current_percentage
                for r in self.splitter.list_rollouts(plan.from_version)
                if r.status in LIVE_ROLLOUT_STATES
            ]
            observed = max(remaining, default=0.0)
            return VerificationResult(
                kind, observed <= check.threshold, check.mandatory, observed, check.threshold,
                f"{observed:g}% still routed to {plan.from_version}",
            )

        baseline = self.governance.get_version(plan.to_version).performance
        if kind == CheckType.LATENCY_CHECK:
            signal, reference, worse = MetricSignal.LATENCY_P95, baseline.latency_p95_ms, relative_increase
        elif kind == CheckType.ERROR_RATE_CHECK:
            signal, reference, worse = MetricSignal.ERROR_RATE, baseline.error_rate, relative_increase
        elif kind == CheckType.ACCURACY_CHECK:
            signal, reference, worse = MetricSignal.ACCURACY, baseline.accuracy, relative_decrease
        else:
            raise StateConflictError(f"Unsupported verification check '{kind}'.")

        latest = self.triggers.latest_value(plan.to_version, signal)
        if latest is None:
            return VerificationResult(kind, True, check.mandatory, None, check.threshold, "no samples for target yet")
        drift = worse(latest, reference)
        return VerificationResult(
            kind, drift <= check.threshold, check.mandatory, latest, check.threshold,
            f"{signal} drift {drift:.2%} vs baseline {reference:g}",
        )
