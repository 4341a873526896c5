from __future__ import annotations

from canary_governance.analytics import MetricDataPoint, MetricIngestionBuffer, MetricSignal
from canary_governance.config import CanaryDefaults
from canary_governance.governance import (
    CanaryTrafficSplitter,
    EvaluationMetric,
    MetricObservation,
    ModelGovernanceManager,
    Rollout,
    RolloutStatus,
    RolloutStep,
    StepCriterion,
)
from canary_governance.orchestration import BufferObservationProvider, ObservationProvider, RolloutScheduler
from canary_governance.types import CanaryConfig, ModelMetadata, ModelPerformance, ModelStatus, ModelVersion


class StaticProvider(ObservationProvider):
    def __init__(self, error_rate: float = 0.01, latency: float = 100.0) -> None:
        self.error_rate = error_rate
        self.latency = latency

    def get_observations(self, rollout: Rollout) -> list[MetricObservation]:
        return [
            MetricObservation(EvaluationMetric.ERROR_RATE, self.error_rate),
            MetricObservation(EvaluationMetric.LATENCY_P95, self.latency),
        ]


def _splitter(*percentages: float) -> CanaryTrafficSplitter:
    criteria = [
        StepCriterion(EvaluationMetric.ERROR_RATE, 0.02),
        StepCriterion(EvaluationMetric.LATENCY_P95, 150.0),
    ]
    splitter = CanaryTrafficSplitter()
    splitter.create_rollout("r1", "v2", [RolloutStep(pct, 60.0, list(criteria)) for pct in percentages])
    splitter.start_rollout("r1")
    return splitter


def test_advances_only_after_consecutive_passes() -> None:
    splitter = _splitter(10.0, 50.0)
    scheduler = RolloutScheduler(splitter, StaticProvider(), CanaryDefaults(required_consecutive_passes=2))

    actions = [scheduler.tick("r1") for _ in range(4)]
    assert [o.action for o in actions] == ["held", "advanced", "held", "completed"]
    assert [o.current_percentage for o in actions] == [10.0, 50.0, 50.0, 50.0]
    assert splitter.get_canary_status("r1").status == RolloutStatus.COMPLETED
    assert scheduler.tick("r1").action == "skipped"


def test_failure_pauses_rollout_and_resets_passes() -> None:
    splitter = _splitter(10.0, 50.0)
    provider = StaticProvider()
    scheduler = RolloutScheduler(splitter, provider, CanaryDefaults(required_consecutive_passes=2))

    assert scheduler.tick("r1").action == "held"
    provider.error_rate = 0.2
    failed = scheduler.tick("r1")
    assert failed.action == "paused"
    assert failed.consecutive_passes == 0
    assert failed.evaluation is not None and failed.evaluation.failed_metrics() == ["error_rate"]
    assert splitter.get_canary_status("r1").status == RolloutStatus.PAUSED
    assert scheduler.tick("r1").action == "skipped"

    splitter.resume_rollout("r1")
    provider.error_rate = 0.01
    resumed = scheduler.tick("r1")
    assert resumed.action == "held"
    assert resumed.consecutive_passes == 1


def test_failure_holds_without_pausing_when_configured() -> None:
    splitter = _splitter(10.0, 50.0)
    scheduler = RolloutScheduler(
        splitter,
        StaticProvider(latency=400.0),
        CanaryDefaults(required_consecutive_passes=1, pause_on_failure=False),
    )
    outcome = scheduler.tick("r1")
    assert outcome.action == "held"
    assert outcome.current_percentage == 10.0
    assert splitter.get_canary_status("r1").status == RolloutStatus.IN_PROGRESS


def test_buffer_provider_fails_closed_without_samples() -> None:
    buffer = MetricIngestionBuffer()
    splitter = _splitter(10.0, 50.0)
    scheduler = RolloutScheduler(
        splitter,
        BufferObservationProvider(buffer),
        CanaryDefaults(required_consecutive_passes=1, pause_on_failure=False),
    )
    assert scheduler.tick("r1").action == "held"

    buffer.append("v2", MetricSignal.ERROR_RATE, MetricDataPoint(0.01))
    buffer.append("v2", MetricSignal.LATENCY_P95, MetricDataPoint(110.0))
    observations = BufferObservationProvider(buffer).get_observations(splitter.get_canary_status("r1"))
    assert {o.metric for o in observations} == {EvaluationMetric.ERROR_RATE, EvaluationMetric.LATENCY_P95}
    assert scheduler.tick("r1").action == "advanced"


def test_run_once_mirrors_percentage_to_governance() -> None:
    governance = ModelGovernanceManager()
    performance = ModelPerformance(100.0, 200.0, 0.95, 0.01, 0.9, 500.0)
    governance.register_version(
        ModelVersion("v1", ["escrow"], performance, ModelMetadata("risk-ml"), status=ModelStatus.STABLE)
    )
    governance.register_version(ModelVersion("v2", ["escrow"], performance, ModelMetadata("risk-ml")))
    governance.deploy_canary("v2", CanaryConfig(50.0, [10.0, 50.0], 40.0, 300.0, rollout_id="r1"))
    governance.update_canary_percentage("v2", 10.0)

    splitter = _splitter(10.0, 50.0)
    scheduler = RolloutScheduler(splitter, StaticProvider(), CanaryDefaults(required_consecutive_passes=1), governance)
    outcomes = scheduler.run_forever(interval_seconds=0.0, max_cycles=1)
    assert [o.action for o in outcomes] == ["advanced"]
    assert governance.get_version("v2").canary_percentage == 50.0
    assert governance.get_traffic_split("escrow").canary_percentage == 50.0
