"""External rollout driver: evaluate the current step, then advance, hold or pause."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
import time

from canary_governance.analytics import MetricIngestionBuffer, MetricSignal
from canary_governance.config import CanaryDefaults
from canary_governance.governance import (
    CanaryTrafficSplitter,
    EvaluationMetric,
    MetricObservation,
    ModelGovernanceManager,
    Rollout,
    RolloutStatus,
    StepEvaluation,
)

logger = logging.getLogger(__name__)

_METRIC_SIGNALS: dict[EvaluationMetric, MetricSignal] = {
    EvaluationMetric.LATENCY_P95: MetricSignal.LATENCY_P95,
    EvaluationMetric.LATENCY_P99: MetricSignal.LATENCY_P99,
    EvaluationMetric.ERROR_RATE: MetricSignal.ERROR_RATE,
    EvaluationMetric.THROUGHPUT: MetricSignal.THROUGHPUT,
    EvaluationMetric.CONFIDENCE: MetricSignal.CONFIDENCE,
}


class ObservationProvider(ABC):
    """Supplies the actual metrics a rollout step is judged against."""

    @abstractmethod
    def get_observations(self, rollout: Rollout) -> list[MetricObservation]:
        """Return one observation per metric available for the rollout's version."""


class BufferObservationProvider(ObservationProvider):
    """Window means from the metric buffer; metrics without samples are left out and fail closed."""

    def __init__(self, buffer: MetricIngestionBuffer, window_seconds: float = 300.0) -> None:
        self.buffer = buffer
        self.window_seconds = window_seconds

    def get_observations(self, rollout: Rollout) -> list[MetricObservation]:
        observations: list[MetricObservation] = []
        for metric, signal in _METRIC_SIGNALS.items():
            window = self.buffer.window(rollout.model_version, signal, self.window_seconds)
            if not window.empty:
                observations.append(MetricObservation(metric, float(window.mean())))
        return observations


@dataclass(slots=True)
class SchedulerOutcome:
    rollout_id: str
    action: str
    consecutive_passes: int
    current_percentage: float
    evaluation: StepEvaluation | None = None


class RolloutScheduler:
    """
    Gating policy over the splitter's pure step evaluation.

    A step is advanced only after `required_consecutive_passes` passing
    evaluations in a row. A failing evaluation resets the count and, with
    `pause_on_failure`, pauses the rollout.
    """

    def __init__(
        self,
        splitter: CanaryTrafficSplitter,
        provider: ObservationProvider,
        defaults: CanaryDefaults | None = None,
        governance: ModelGovernanceManager | None = None,
    ) -> None:
        self.splitter = splitter
        self.provider = provider
        self.defaults = defaults or CanaryDefaults()
        self.governance = governance
        self._passes: dict[str, int] = {}

    def _mirror(self, rollout: Rollout) -> None:
        if self.governance is not None:
            self.governance.update_canary_percentage(rollout.model_version, rollout.current_percentage)

    def tick(self, rollout_id: str) -> SchedulerOutcome:
        rollout = self.splitter.get_canary_status(rollout_id)
        if rollout.status != RolloutStatus.IN_PROGRESS:
            return SchedulerOutcome(rollout_id, "skipped", self._passes.get(rollout_id, 0), rollout.current_percentage)

        evaluation = self.splitter.evaluate_current_step(rollout_id, self.provider.get_observations(rollout))
        if not evaluation.passed:
            self._passes[rollout_id] = 0
            failed = ", ".join(evaluation.failed_metrics())
            if self.defaults.pause_on_failure:
                rollout = self.splitter.pause_rollout(rollout_id, f"step {evaluation.step_index} failed: {failed}")
                action = "paused"
            else:
                action = "held"
            logger.warning("Rollout %s step %d failed (%s); %s", rollout_id, evaluation.step_index, failed, action)
            return SchedulerOutcome(rollout_id, action, 0, rollout.current_percentage, evaluation)

        passes = self._passes.get(rollout_id, 0) + 1
        if passes < self.defaults.required_consecutive_passes:
            self._passes[rollout_id] = passes
            return SchedulerOutcome(rollout_id, "held", passes, rollout.current_percentage, evaluation)

        self._passes[rollout_id] = 0
        rollout = self.splitter.advance_to_next_step(rollout_id)
        self._mirror(rollout)
        action = "completed" if rollout.status == RolloutStatus.COMPLETED else "advanced"
        logger.info("Rollout %s %s at %.1f%%", rollout_id, action, rollout.current_percentage)
        return SchedulerOutcome(rollout_id, action, passes, rollout.current_percentage, evaluation)

    def run_once(self) -> list[SchedulerOutcome]:
        return [
            self.tick(rollout.rollout_id)
            for rollout in self.splitter.list_rollouts()
            if rollout.status == RolloutStatus.IN_PROGRESS
        ]

    def run_forever(self, interval_seconds: float, max_cycles: int | None = None) -> list[SchedulerOutcome]:
        outcomes: list[SchedulerOutcome] = []
        cycles = 0
        while True:
            outcomes.extend(self.run_once())
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            time.sleep(max(interval_seconds, 1.0))
        return outcomes
