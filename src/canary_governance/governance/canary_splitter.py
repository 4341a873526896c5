"""Canary rollout lifecycle, deterministic traffic splitting and A/B cohorts."""

from __future__ import annotations

from copy import deepcopy
from typing import Any
import logging
import threading

from canary_governance.audit import AuditLevel, AuditRouter
from canary_governance.errors import NotFoundError, StateConflictError, ValidationError
from canary_governance.time_utils import now_utc

from .ab_testing import analyze_observations
from .contracts import (
    ACTIVE_ROLLOUT_STATES,
    LIVE_ROLLOUT_STATES,
    TERMINAL_ROLLOUT_STATES,
    ABAssignment,
    ABTestSetup,
    ABTestStatus,
    CanaryRoutingDecision,
    Cohort,
    MetricObservation,
    Rollout,
    RolloutStatus,
    RolloutStep,
    StepEvaluation,
)
from .deployment_guard import evaluate_criteria, hash_bucket

logger = logging.getLogger(__name__)

COMPONENT = "canary_splitter"


class CanaryTrafficSplitter:
    """
    Owns rollout state and answers "should this request see the canary?".

    All rollout-mutating calls for one rollout id are serialized by the
    splitter lock, so pause/abort can never interleave with an advance.
    """

    def __init__(self, audit: AuditRouter | None = None) -> None:
        self.audit = audit or AuditRouter.in_memory()
        self._lock = threading.RLock()
        self._rollouts: dict[str, Rollout] = {}
        self._ab_tests: dict[str, ABTestSetup] = {}
        self._ab_observations: dict[str, dict[Cohort, dict[str, list[float]]]] = {}
        self._open_circuits: dict[str, str] = {}

    def _audit(self, action: str, subject_id: str, reason: str, **kwargs: Any) -> None:
        self.audit.emit(component=COMPONENT, action=action, subject_id=subject_id, reason=reason, **kwargs)

    def _require_rollout(self, rollout_id: str) -> Rollout:
        rollout = self._rollouts.get(rollout_id)
        if rollout is None:
            raise NotFoundError(f"Unknown rollout '{rollout_id}'")
        return rollout

    def _require_test(self, test_id: str) -> ABTestSetup:
        setup = self._ab_tests.get(test_id)
        if setup is None:
            raise NotFoundError(f"Unknown A/B test '{test_id}'")
        return setup

    def _transition(
        self,
        rollout: Rollout,
        status: RolloutStatus,
        reason: str | None = None,
        level: AuditLevel = AuditLevel.INFO,
    ) -> None:
        previous = rollout.status
        rollout.status = status
        rollout.status_reason = reason
        rollout.updated_at = now_utc()
        self._audit(
            f"rollout_{status}",
            rollout.rollout_id,
            reason or f"{previous} -> {status}",
            level=level,
            details={
                "model_version": rollout.model_version,
                "step_index": rollout.current_step_index,
                "current_percentage": rollout.current_percentage,
            },
        )
        logger.info(
            "Rollout %s: %s -> %s (step=%d, pct=%.1f)",
            rollout.rollout_id,
            previous,
            status,
            rollout.current_step_index,
            rollout.current_percentage,
        )

    # Rollout lifecycle

    def create_rollout(
        self,
        rollout_id: str,
        model_version: str,
        steps: list[RolloutStep],
        paths: list[str] | None = None,
    ) -> Rollout:
        if not rollout_id:
            raise ValidationError("Rollout id must not be empty.")
        if not steps:
            raise ValidationError(f"Rollout '{rollout_id}' needs at least one step.")
        for index, step in enumerate(steps):
            if not 0.0 <= step.target_percentage <= 100.0:
                raise ValidationError(f"Step {index} percentage {step.target_percentage} outside [0, 100].")
            if step.duration_seconds <= 0:
                raise ValidationError(f"Step {index} duration must be positive.")
        with self._lock:
            if rollout_id in self._rollouts:
                raise StateConflictError(f"Rollout '{rollout_id}' already exists.")
            rollout = Rollout(
                rollout_id=rollout_id,
                model_version=model_version,
                steps=deepcopy(steps),
                paths=list(paths or []),
                target_percentage=steps[-1].target_percentage,
            )
            self._rollouts[rollout_id] = rollout
            self._audit(
                "create_rollout",
                rollout_id,
                f"{len(steps)} steps to {rollout.target_percentage:g}%",
                details={"model_version": model_version, "paths": list(rollout.paths)},
            )
            return deepcopy(rollout)

    def start_rollout(self, rollout_id: str) -> Rollout:
        with self._lock:
            rollout = self._require_rollout(rollout_id)
            if rollout.status != RolloutStatus.PLANNING:
                raise StateConflictError(f"Rollout '{rollout_id}' cannot start from {rollout.status}.")
            rollout.current_step_index = 0
            rollout.current_percentage = rollout.steps[0].target_percentage
            rollout.started_at = now_utc()
            self._transition(rollout, RolloutStatus.IN_PROGRESS)
            return deepcopy(rollout)

    def evaluate_current_step(self, rollout_id: str, actual: list[MetricObservation]) -> StepEvaluation:
        """Pure query: score the current step's criteria without touching rollout state."""
        with self._lock:
            rollout = self._require_rollout(rollout_id)
            if rollout.status not in (RolloutStatus.IN_PROGRESS, RolloutStatus.PAUSED):
                raise StateConflictError(f"Rollout '{rollout_id}' has no step under evaluation ({rollout.status}).")
            step = rollout.steps[rollout.current_step_index]
            passed, results = evaluate_criteria(step.criteria, actual)
            return StepEvaluation(
                rollout_id=rollout_id,
                step_index=rollout.current_step_index,
                passed=passed,
                results=results,
            )

    def advance_to_next_step(self, rollout_id: str) -> Rollout:
        """Move to the next step, or complete at the last step's percentage; PLANNING advances into step 0."""
        with self._lock:
            rollout = self._require_rollout(rollout_id)
            if rollout.status == RolloutStatus.PLANNING:
                return self.start_rollout(rollout_id)
            if rollout.status != RolloutStatus.IN_PROGRESS:
                raise StateConflictError(f"Rollout '{rollout_id}' cannot advance from {rollout.status}.")
            next_index = rollout.current_step_index + 1
            if next_index >= len(rollout.steps):
                rollout.current_percentage = rollout.steps[-1].target_percentage
                rollout.final_percentage = rollout.current_percentage
                self._transition(rollout, RolloutStatus.COMPLETED, f"completed at {rollout.final_percentage:g}%")
            else:
                rollout.current_step_index = next_index
                rollout.current_percentage = rollout.steps[next_index].target_percentage
                self._transition(rollout, RolloutStatus.IN_PROGRESS, f"advanced to step {next_index}")
            return deepcopy(rollout)

    def pause_rollout(self, rollout_id: str, reason: str) -> Rollout:
        with self._lock:
            rollout = self._require_rollout(rollout_id)
            if rollout.status != RolloutStatus.IN_PROGRESS:
                raise StateConflictError(f"Rollout '{rollout_id}' cannot pause from {rollout.status}.")
            self._transition(rollout, RolloutStatus.PAUSED, reason, level=AuditLevel.WARNING)
            return deepcopy(rollout)

    def resume_rollout(self, rollout_id: str) -> Rollout:
        with self._lock:
            rollout = self._require_rollout(rollout_id)
            if rollout.status != RolloutStatus.PAUSED:
                raise StateConflictError(f"Rollout '{rollout_id}' is not paused ({rollout.status}).")
            self._transition(rollout, RolloutStatus.IN_PROGRESS, f"resumed at step {rollout.current_step_index}")
            return deepcopy(rollout)

    def abort_rollout(self, rollout_id: str, reason: str) -> Rollout:
        with self._lock:
            rollout = self._require_rollout(rollout_id)
            if rollout.status in TERMINAL_ROLLOUT_STATES:
                raise StateConflictError(f"Rollout '{rollout_id}' already finished ({rollout.status}).")
            rollout.current_percentage = 0.0
            self._transition(rollout, RolloutStatus.ABORTED, reason, level=AuditLevel.WARNING)
            return deepcopy(rollout)

    def mark_rolled_back(self, rollout_id: str, reason: str) -> Rollout:
        """A completed rollout still serves traffic, so it can be rolled back too."""
        with self._lock:
            rollout = self._require_rollout(rollout_id)
            if rollout.status in (RolloutStatus.ABORTED, RolloutStatus.ROLLED_BACK, RolloutStatus.PROMOTED):
                raise StateConflictError(f"Rollout '{rollout_id}' already finished ({rollout.status}).")
            rollout.current_percentage = 0.0
            self._transition(rollout, RolloutStatus.ROLLED_BACK, reason, level=AuditLevel.WARNING)
            return deepcopy(rollout)

    def mark_promoted(self, model_version: str) -> list[Rollout]:
        """Retire every rollout still serving `model_version` once it is the stable version."""
        with self._lock:
            retired: list[Rollout] = []
            for rollout in self._rollouts.values():
                if rollout.model_version != model_version:
                    continue
                if rollout.status not in LIVE_ROLLOUT_STATES:
                    continue
                rollout.final_percentage = rollout.current_percentage
                rollout.current_percentage = 0.0
                self._transition(rollout, RolloutStatus.PROMOTED, f"{model_version} promoted to stable")
                retired.append(deepcopy(rollout))
            return retired

    def update_traffic_percentage(self, rollout_id: str, percentage: float) -> Rollout:
        """Set live canary traffic for a rollout that still serves traffic (rollback traffic shifts)."""
        if not 0.0 <= percentage <= 100.0:
            raise ValidationError(f"Traffic percentage {percentage} outside [0, 100].")
        with self._lock:
            rollout = self._require_rollout(rollout_id)
            if rollout.status not in LIVE_ROLLOUT_STATES:
                raise StateConflictError(f"Rollout '{rollout_id}' traffic is fixed in {rollout.status}.")
            previous = rollout.current_percentage
            rollout.current_percentage = percentage
            rollout.updated_at = now_utc()
            self._audit(
                "update_traffic_percentage",
                rollout_id,
                f"{previous:g}% -> {percentage:g}%",
                details={"model_version": rollout.model_version},
            )
            return deepcopy(rollout)

    def trip_circuit_breaker(self, model_version: str, reason: str) -> None:
        with self._lock:
            self._open_circuits[model_version] = reason
            self._audit("trip_circuit_breaker", model_version, reason, level=AuditLevel.CRITICAL)

    def reset_circuit_breaker(self, model_version: str) -> None:
        with self._lock:
            if self._open_circuits.pop(model_version, None) is None:
                raise StateConflictError(f"Circuit breaker for '{model_version}' is not open.")
            self._audit("reset_circuit_breaker", model_version, "circuit closed")

    def is_circuit_open(self, model_version: str) -> bool:
        with self._lock:
            return model_version in self._open_circuits

    def should_route_to_canary(self, path: str, request_id: str) -> CanaryRoutingDecision:
        """
        Deterministic: the same request id always lands in the same bucket.

        Active canaries are scanned in creation order; the first one whose
        percentage covers the bucket wins.
        """
        bucket = hash_bucket(request_id)
        with self._lock:
            for rollout in self._rollouts.values():
                if rollout.status not in ACTIVE_ROLLOUT_STATES or not rollout.serves_path(path):
                    continue
                if rollout.model_version in self._open_circuits:
                    continue
                if bucket < rollout.current_percentage:
                    return CanaryRoutingDecision(
                        route_to_canary=True,
                        routing_reason=f"bucket {bucket} < {rollout.current_percentage:g}%",
                        model_version=rollout.model_version,
                        rollout_id=rollout.rollout_id,
                        percentage=rollout.current_percentage,
                        bucket=bucket,
                    )
            return CanaryRoutingDecision(
                route_to_canary=False,
                routing_reason="no active canary covers bucket",
                bucket=bucket,
            )

    def get_canary_status(self, rollout_id: str) -> Rollout:
        with self._lock:
            return deepcopy(self._require_rollout(rollout_id))

    def get_all_active_canaries(self) -> list[Rollout]:
        with self._lock:
            return [deepcopy(r) for r in self._rollouts.values() if r.status in ACTIVE_ROLLOUT_STATES]

    def list_rollouts(self, model_version: str | None = None) -> list[Rollout]:
        with self._lock:
            return [
                deepcopy(r)
                for r in self._rollouts.values()
                if model_version is None or r.model_version == model_version
            ]

    # A/B tests

    def setup_ab_test(self, setup: ABTestSetup) -> ABTestSetup:
        if not setup.test_id:
            raise ValidationError("A/B test id must not be empty.")
        if setup.control_version == setup.treatment_version:
            raise ValidationError("Control and treatment versions must differ.")
        if not 0.0 < setup.traffic_allocation <= 100.0:
            raise ValidationError(f"Traffic allocation {setup.traffic_allocation} outside (0, 100].")
        if not 0.0 < setup.treatment_split < 100.0:
            raise ValidationError(f"Treatment split {setup.treatment_split} outside (0, 100).")
        stats = setup.statistics
        if not 0.0 < stats.confidence_level < 1.0 or not 0.0 < stats.power < 1.0:
            raise ValidationError("Confidence level and power must lie in (0, 1).")
        if stats.minimum_sample_size < 1:
            raise ValidationError("Minimum sample size must be at least 1.")
        for hypothesis in setup.hypotheses:
            if not 0.0 < hypothesis.significance_level < 1.0:
                raise ValidationError(f"Significance level for '{hypothesis.metric}' must lie in (0, 1).")
        with self._lock:
            if setup.test_id in self._ab_tests:
                raise StateConflictError(f"A/B test '{setup.test_id}' already exists.")
            stored = deepcopy(setup)
            stored.status = ABTestStatus.DESIGNING
            self._ab_tests[stored.test_id] = stored
            self._ab_observations[stored.test_id] = {Cohort.CONTROL: {}, Cohort.TREATMENT: {}}
            self._audit(
                "setup_ab_test",
                stored.test_id,
                f"{stored.control_version} vs {stored.treatment_version}",
                details={"paths": list(stored.paths), "traffic_allocation": stored.traffic_allocation},
            )
            return deepcopy(stored)

    def start_ab_test(self, test_id: str) -> ABTestSetup:
        with self._lock:
            setup = self._require_test(test_id)
            if setup.status != ABTestStatus.DESIGNING:
                raise StateConflictError(f"A/B test '{test_id}' cannot start from {setup.status}.")
            setup.status = ABTestStatus.RUNNING
            setup.samples_collected = 0
            self._audit("start_ab_test", test_id, "running")
            return deepcopy(setup)

    def get_ab_test_assignment(self, test_id: str, user_id: str) -> ABAssignment:
        with self._lock:
            setup = self._require_test(test_id)
            if setup.status in (ABTestStatus.CONCLUDED, ABTestStatus.INCONCLUSIVE):
                raise StateConflictError(f"A/B test '{test_id}' is finished ({setup.status}).")
            if hash_bucket(f"{test_id}:allocation:{user_id}") >= setup.traffic_allocation:
                return ABAssignment(test_id=test_id, user_id=user_id, enrolled=False)
            bucket = hash_bucket(f"{test_id}:{user_id}")
            cohort = Cohort.TREATMENT if bucket < setup.treatment_split else Cohort.CONTROL
            return ABAssignment(
                test_id=test_id,
                user_id=user_id,
                enrolled=True,
                cohort=cohort,
                model_version=setup.version_for(cohort),
                bucket=bucket,
            )

    def record_ab_observation(self, test_id: str, cohort: Cohort, metric: str, value: float) -> int:
        """Append one observation; returns samples collected so far."""
        with self._lock:
            setup = self._require_test(test_id)
            if setup.status != ABTestStatus.RUNNING:
                raise StateConflictError(f"A/B test '{test_id}' is not running ({setup.status}).")
            self._ab_observations[test_id][cohort].setdefault(metric, []).append(float(value))
            setup.samples_collected += 1
            return setup.samples_collected

    def analyze_ab_test(self, test_id: str) -> ABTestSetup:
        """Running -> Analyzing -> Concluded | Inconclusive."""
        with self._lock:
            setup = self._require_test(test_id)
            if setup.status != ABTestStatus.RUNNING:
                raise StateConflictError(f"A/B test '{test_id}' cannot be analyzed from {setup.status}.")
            result, reason = analyze_observations(setup, self._ab_observations[test_id])
            setup.status = ABTestStatus.ANALYZING
            setup.preliminary_results = result
            if reason is None:
                setup.status = ABTestStatus.CONCLUDED
                setup.final_results = result
                setup.winner = result.winner
                outcome = f"winner={result.winner}"
            else:
                setup.status = ABTestStatus.INCONCLUSIVE
                setup.inconclusive_reason = reason
                outcome = reason
            setup.concluded_at = now_utc()
            self._audit(
                "analyze_ab_test",
                test_id,
                outcome,
                details={
                    "status": str(setup.status),
                    "control_samples": result.control_samples,
                    "treatment_samples": result.treatment_samples,
                },
            )
            return deepcopy(setup)

    def get_ab_test(self, test_id: str) -> ABTestSetup:
        with self._lock:
            return deepcopy(self._require_test(test_id))

    def list_ab_tests(self) -> list[ABTestSetup]:
        with self._lock:
            return [deepcopy(t) for t in self._ab_tests.values()]
