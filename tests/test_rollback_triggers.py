from __future__ import annotations

from datetime import timedelta
import threading
import time

import numpy as np
import pytest

from canary_governance.analytics import MetricDataPoint, MetricSignal, ModelMetrics
from canary_governance.errors import NotFoundError, StateConflictError, ValidationError
from canary_governance.recovery import (
    CheckType,
    ExecutionStatus,
    RollbackDecision,
    RollbackPlan,
    RollbackStep,
    RollbackStepHandler,
    RollbackStrategy,
    RollbackTriggerConfig,
    RollbackTriggerManager,
    StepAction,
    StrategyKind,
    VerificationCheck,
    VerificationResult,
    select_strategy,
)
from canary_governance.time_utils import now_utc
from canary_governance.types import Severity, TriggerType, max_severity


def _trigger(
    trigger_id: str = "t-err",
    trigger_type: TriggerType = TriggerType.ERROR_RATE_SPIKE,
    baseline: float = 0.01,
    threshold: float = 1.0,
    consecutive: int = 1,
    severity: Severity = Severity.CRITICAL,
    **kwargs: object,
) -> RollbackTriggerConfig:
    return RollbackTriggerConfig(
        trigger_id=trigger_id,
        model_version="v2",
        trigger_type=trigger_type,
        baseline=baseline,
        threshold=threshold,
        consecutive_violations=consecutive,
        severity=severity,
        **kwargs,
    )


def _decision(severity: Severity) -> RollbackDecision:
    return RollbackDecision(model_version="v2", should_rollback=True, reason="test", severity=severity, target_version="v1")


class RecordingHandler(RollbackStepHandler):
    def __init__(self, fail_on: StepAction | None = None, slow_on: StepAction | None = None) -> None:
        self.fail_on = fail_on
        self.slow_on = slow_on
        self.actions: list[StepAction] = []
        self.cancelled: list[StepAction] = []
        self.failed_checks: set[CheckType] = set()

    def run_step(self, plan: RollbackPlan, step: RollbackStep, cancelled: threading.Event) -> None:
        if step.action == self.slow_on:
            time.sleep(0.5)
        if cancelled.is_set():
            self.cancelled.append(step.action)
            return
        if step.action == self.fail_on:
            raise RuntimeError("traffic api unavailable")
        self.actions.append(step.action)

    def verify(self, plan: RollbackPlan, check: VerificationCheck) -> VerificationResult:
        passed = check.check_type not in self.failed_checks
        return VerificationResult(check.check_type, passed, check.mandatory)


def test_trigger_validation_and_table_operations() -> None:
    manager = RollbackTriggerManager()
    with pytest.raises(ValidationError):
        manager.add_trigger(_trigger(threshold=0.0))
    with pytest.raises(ValidationError):
        manager.add_trigger(_trigger(evaluation_window_seconds=0.0))
    with pytest.raises(ValidationError):
        manager.add_trigger(_trigger(trigger_id=""))
    with pytest.raises(ValidationError):
        manager.add_trigger(_trigger(trigger_type=TriggerType.DATA_DRIFT, threshold=0.2))

    manager.add_trigger(_trigger())
    with pytest.raises(StateConflictError):
        manager.add_trigger(_trigger())
    with pytest.raises(NotFoundError):
        manager.update_trigger("missing", threshold=2.0)
    with pytest.raises(ValidationError):
        manager.update_trigger("t-err", threshold=-1.0)
    assert manager.get_trigger("t-err").threshold == 1.0

    assert manager.update_trigger("t-err", threshold=2.0).threshold == 2.0
    assert not manager.disable_trigger("t-err").enabled
    assert manager.list_triggers("v2")[0].enabled is False
    assert manager.enable_trigger("t-err").enabled
    assert manager.list_triggers("v9") == []


def test_debounce_requires_consecutive_violations() -> None:
    manager = RollbackTriggerManager()
    manager.add_trigger(
        _trigger("t-lat", TriggerType.LATENCY_DRIFT, baseline=100.0, threshold=0.5, consecutive=3, severity=Severity.HIGH)
    )
    bad = ModelMetrics.from_values(latency_p95=[200.0])
    good = ModelMetrics.from_values(latency_p95=[101.0])

    first = manager.evaluate_triggers_for_model("v2", bad)
    assert not first.should_rollback
    assert "pending" in first.reason
    assert not manager.evaluate_triggers_for_model("v2", bad).should_rollback
    fired = manager.evaluate_triggers_for_model("v2", bad)
    assert fired.should_rollback
    assert fired.triggered_by == ["t-lat"]
    assert fired.severity == Severity.HIGH

    # firing resets the counter
    assert not manager.evaluate_triggers_for_model("v2", bad).should_rollback
    assert manager.violation_count("t-lat") == 1

    assert not manager.evaluate_triggers_for_model("v2", good).should_rollback
    assert manager.violation_count("t-lat") == 0
    for metrics in (bad, bad, good, bad, bad):
        assert not manager.evaluate_triggers_for_model("v2", metrics).should_rollback


def test_insufficient_samples_leave_counter_untouched() -> None:
    manager = RollbackTriggerManager()
    manager.add_trigger(_trigger(consecutive=2, min_samples=3))
    manager.evaluate_triggers_for_model("v2", ModelMetrics.from_values(error_rate=[0.5, 0.5, 0.5]))
    assert manager.violation_count("t-err") == 1

    decision = manager.evaluate_triggers_for_model("v2", ModelMetrics.from_values(error_rate=[0.5]))
    assert not decision.should_rollback
    assert decision.evaluations[0].skipped_reason is not None
    assert manager.violation_count("t-err") == 1


def test_disabled_trigger_is_not_evaluated() -> None:
    manager = RollbackTriggerManager()
    manager.add_trigger(_trigger())
    manager.disable_trigger("t-err")
    decision = manager.update_metrics("v2", ModelMetrics.from_values(error_rate=[0.5]))
    assert not decision.should_rollback
    assert decision.evaluations == []


def test_error_rate_spike_produces_critical_decision() -> None:
    manager = RollbackTriggerManager()
    manager.set_stable_version("v1")
    manager.set_model_paths("v2", ["escrow", "payment"])
    manager.add_trigger(_trigger())

    decision = manager.update_metrics("v2", ModelMetrics.from_values(error_rate=[0.2]))
    assert decision.should_rollback
    assert decision.severity == Severity.CRITICAL
    assert decision.target_version == "v1"
    assert decision.triggered_by == ["t-err"]
    assert decision.impact is not None
    assert decision.impact.affected_paths == ["escrow", "payment"]
    assert decision.impact.estimated_affected_users == 200_000
    assert decision.impact.estimated_rollback_seconds == 60.0
    assert decision.impact.data_loss_risk
    assert "enable_circuit_breaker" in decision.recommended_actions
    assert "page_oncall_immediately" in decision.recommended_actions
    assert manager.latest_value("v2", MetricSignal.ERROR_RATE) == 0.2
    fired = manager.audit.memory_sink().events(action="rollback_fired")
    assert len(fired) == 1
    assert fired[0].details["windows"]["t-err"]["max"] == pytest.approx(0.2)


def test_severity_is_maximum_across_fired_triggers() -> None:
    manager = RollbackTriggerManager()
    manager.set_stable_version("v1")
    manager.add_trigger(_trigger("t-cpu", TriggerType.CPU_SPIKE, baseline=20.0, threshold=0.5, severity=Severity.LOW))
    manager.add_trigger(
        _trigger("t-conf", TriggerType.CONFIDENCE_DROP, baseline=0.9, threshold=0.15, severity=Severity.MEDIUM)
    )
    decision = manager.update_metrics("v2", ModelMetrics.from_values(cpu=[50.0], confidence=[0.5]))
    assert decision.should_rollback
    assert sorted(decision.triggered_by) == ["t-conf", "t-cpu"]
    assert decision.severity == Severity.MEDIUM
    assert "enable_circuit_breaker" not in decision.recommended_actions
    assert "freeze_canary_promotion" in decision.recommended_actions


def test_max_severity_ranks_rather_than_sorts_names() -> None:
    assert max_severity([Severity.LOW, Severity.CRITICAL, Severity.HIGH]) == Severity.CRITICAL
    assert max_severity([Severity.MEDIUM, Severity.LOW]) == Severity.MEDIUM
    with pytest.raises(ValueError):
        max_severity([])


def test_no_target_when_failing_version_is_stable() -> None:
    manager = RollbackTriggerManager()
    manager.set_stable_version("v2")
    manager.add_trigger(_trigger())
    decision = manager.update_metrics("v2", ModelMetrics.from_values(error_rate=[0.3]))
    assert decision.should_rollback
    assert decision.target_version is None


def test_window_is_relative_to_newest_point() -> None:
    manager = RollbackTriggerManager()
    manager.add_trigger(_trigger("t-lat", TriggerType.LATENCY_DRIFT, baseline=100.0, threshold=0.5))
    newest = now_utc()
    manager.record_datapoint("v2", MetricSignal.LATENCY_P95, 1_000.0, timestamp=newest - timedelta(seconds=600))
    manager.record_datapoint("v2", MetricSignal.LATENCY_P95, 110.0, timestamp=newest)
    decision = manager.evaluate_triggers_for_model("v2")
    assert not decision.should_rollback
    assert decision.evaluations[0].samples == 1
    assert decision.evaluations[0].observed == pytest.approx(110.0)

    removed = manager.prune_metrics(newest - timedelta(seconds=60))
    assert removed == 1


def test_memory_leak_uses_latest_value() -> None:
    manager = RollbackTriggerManager()
    manager.add_trigger(_trigger("t-mem", TriggerType.MEMORY_LEAK, baseline=500.0, threshold=0.5, severity=Severity.LOW))
    stamp = now_utc()
    metrics = ModelMetrics(
        series={
            MetricSignal.MEMORY: [
                MetricDataPoint(400.0, stamp - timedelta(seconds=30)),
                MetricDataPoint(450.0, stamp - timedelta(seconds=20)),
                MetricDataPoint(900.0, stamp),
            ]
        }
    )
    decision = manager.update_metrics("v2", metrics)
    assert decision.should_rollback
    assert decision.evaluations[0].observed == 900.0


def test_data_drift_uses_population_stability_index() -> None:
    rng = np.random.default_rng(3)
    reference = rng.normal(0.9, 0.02, size=500).tolist()
    manager = RollbackTriggerManager()
    manager.add_trigger(
        _trigger(
            "t-psi",
            TriggerType.DATA_DRIFT,
            baseline=0.9,
            threshold=0.25,
            severity=Severity.MEDIUM,
            reference_distribution=reference,
        )
    )
    stable = manager.update_metrics("v2", ModelMetrics.from_values(confidence=rng.normal(0.9, 0.02, size=400)))
    assert not stable.should_rollback
    shifted = manager.update_metrics("v2", ModelMetrics.from_values(confidence=rng.normal(0.7, 0.05, size=400)))
    assert shifted.should_rollback
    assert shifted.evaluations[0].drift > 0.25


def test_strategy_selection_follows_severity() -> None:
    assert select_strategy(Severity.CRITICAL).kind == StrategyKind.IMMEDIATE
    high = select_strategy(Severity.HIGH)
    assert (high.kind, high.traffic_steps, high.step_interval_seconds) == (StrategyKind.GRADUAL, [50.0, 100.0], 30.0)
    medium = select_strategy(Severity.MEDIUM)
    assert (medium.kind, medium.traffic_steps, medium.step_interval_seconds) == (
        StrategyKind.GRADUAL,
        [25.0, 50.0, 100.0],
        60.0,
    )
    low = select_strategy(Severity.LOW)
    assert (low.kind, low.traffic_steps) == (StrategyKind.CANARY_REVERSE, [75.0, 50.0, 25.0, 0.0])


def test_create_rollback_plan_shapes_steps_and_checks() -> None:
    manager = RollbackTriggerManager()
    critical = manager.create_rollback_plan("v2", "v1", _decision(Severity.CRITICAL))
    assert critical.strategy.kind == StrategyKind.IMMEDIATE
    assert critical.steps[0].action == StepAction.ENABLE_CIRCUIT_BREAKER
    assert critical.estimated_duration_seconds == sum(s.timeout_seconds for s in critical.steps)
    assert all(c.mandatory for c in critical.verification_checks)

    high = manager.create_rollback_plan("v2", "v1", _decision(Severity.HIGH))
    traffic = [s.canary_percentage for s in high.steps if s.action == StepAction.UPDATE_TRAFFIC_SPLIT]
    assert traffic == [50.0, 0.0]

    low = manager.create_rollback_plan("v2", "v1", _decision(Severity.LOW))
    assert low.strategy.kind == StrategyKind.CANARY_REVERSE
    assert StepAction.ENABLE_CIRCUIT_BREAKER not in [s.action for s in low.steps]
    assert not any(c.check_type == CheckType.ACCURACY_CHECK for c in low.verification_checks)
    assert [s.index for s in low.steps] == list(range(len(low.steps)))

    blue_green = manager.create_rollback_plan(
        "v2", "v1", _decision(Severity.MEDIUM), strategy=RollbackStrategy(StrategyKind.BLUE_GREEN, warmup_seconds=45.0)
    )
    assert blue_green.strategy.kind == StrategyKind.BLUE_GREEN
    assert blue_green.steps[0].timeout_seconds == 45.0
    assert manager.get_plan(blue_green.plan_id).from_version == "v2"

    with pytest.raises(ValidationError):
        manager.create_rollback_plan("v2", "v2", _decision(Severity.HIGH))
    with pytest.raises(NotFoundError):
        manager.get_plan("plan-missing")


def test_execute_without_handler_records_in_progress_execution() -> None:
    manager = RollbackTriggerManager()
    plan = manager.create_rollback_plan("v2", "v1", _decision(Severity.HIGH))
    execution = manager.execute_rollback_plan(plan)
    assert execution.status == ExecutionStatus.IN_PROGRESS
    assert not execution.finished
    assert manager.get_execution(execution.execution_id).from_version == "v2"
    assert [e.execution_id for e in manager.list_executions("v2")] == [execution.execution_id]
    with pytest.raises(NotFoundError):
        manager.get_execution("exec-missing")


def test_execute_runs_steps_in_order_then_verifies() -> None:
    manager = RollbackTriggerManager()
    plan = manager.create_rollback_plan("v2", "v1", _decision(Severity.CRITICAL))
    handler = RecordingHandler()
    execution = manager.execute_rollback_plan(plan, handler, timeout_scale=0.1)
    assert execution.status == ExecutionStatus.COMPLETED
    assert handler.actions == [s.action for s in plan.steps]
    assert execution.steps_completed == [s.index for s in plan.steps]
    assert len(execution.verification_results) == len(plan.verification_checks)
    assert manager.get_execution(execution.execution_id).status == ExecutionStatus.COMPLETED


def test_failed_step_aborts_remaining_plan() -> None:
    manager = RollbackTriggerManager()
    plan = manager.create_rollback_plan("v2", "v1", _decision(Severity.CRITICAL))
    switch_index = next(s.index for s in plan.steps if s.action == StepAction.SWITCH_MODEL_VERSION)
    execution = manager.execute_rollback_plan(plan, RecordingHandler(fail_on=StepAction.SWITCH_MODEL_VERSION))
    assert execution.status == ExecutionStatus.FAILED
    assert execution.failed_step == switch_index
    assert execution.steps_completed == list(range(switch_index))
    assert len(execution.errors) == 1
    assert "traffic api unavailable" in execution.errors[0]
    assert execution.verification_results == []


def test_failed_step_without_abort_is_partially_completed() -> None:
    manager = RollbackTriggerManager()
    plan = manager.create_rollback_plan("v2", "v1", _decision(Severity.CRITICAL), rollback_on_failure=False)
    execution = manager.execute_rollback_plan(plan, RecordingHandler(fail_on=StepAction.NOTIFY_OPERATORS))
    assert execution.status == ExecutionStatus.PARTIALLY_COMPLETED
    assert len(execution.steps_completed) == len(plan.steps) - 1
    assert execution.failed_step is None


def test_step_timeout_is_treated_as_failure() -> None:
    manager = RollbackTriggerManager()
    plan = manager.create_rollback_plan("v2", "v1", _decision(Severity.CRITICAL))
    handler = RecordingHandler(slow_on=StepAction.HEALTH_CHECK)
    execution = manager.execute_rollback_plan(plan, handler, timeout_scale=0.01)
    assert execution.status == ExecutionStatus.FAILED
    assert "timed out" in (execution.status_reason or "")

    # the worker outlives the timeout but sees the cancellation before acting
    time.sleep(0.8)
    assert handler.cancelled == [StepAction.HEALTH_CHECK]
    assert StepAction.HEALTH_CHECK not in handler.actions


def test_mandatory_verification_failure_marks_partial_completion() -> None:
    manager = RollbackTriggerManager()
    plan = manager.create_rollback_plan("v2", "v1", _decision(Severity.HIGH))
    handler = RecordingHandler()
    handler.failed_checks = {CheckType.TRAFFIC_DISTRIBUTION}
    execution = manager.execute_rollback_plan(plan, handler, timeout_scale=0.1)
    assert execution.status == ExecutionStatus.PARTIALLY_COMPLETED
    assert "traffic_distribution" in (execution.status_reason or "")
    assert execution.errors == []
