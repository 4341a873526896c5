"""Drive canary rollouts step by step from buffered metrics."""

from __future__ import annotations

import argparse
from pathlib import Path

import numpy as np

from canary_governance.analytics import MetricDataPoint, MetricSignal
from canary_governance.audit import configure_logging
from canary_governance.config import ServiceConfig, load_config
from canary_governance.orchestration import BufferObservationProvider, GovernanceOrchestrator, RolloutScheduler
from canary_governance.time_utils import now_utc
from canary_governance.types import ModelMetadata, ModelPerformance, ModelStatus, ModelVersion


def _baseline() -> ModelPerformance:
    return ModelPerformance(
        latency_p95_ms=120.0,
        latency_p99_ms=250.0,
        accuracy=0.94,
        error_rate=0.01,
        confidence=0.88,
        throughput=400.0,
    )


def _feed_synthetic_metrics(orchestrator: GovernanceOrchestrator, version: str, seed: int, degrade: bool) -> None:
    rng = np.random.default_rng(seed)
    stamp = now_utc()
    base = _baseline()
    latency = rng.normal(base.latency_p95_ms * (1.4 if degrade else 0.98), 3.0, size=20)
    errors = np.clip(rng.normal(base.error_rate, 0.001, size=20), 0.0, 1.0)
    confidence = np.clip(rng.normal(base.confidence, 0.005, size=20), 0.0, 1.0)
    for signal, values in (
        (MetricSignal.LATENCY_P95, latency),
        (MetricSignal.ERROR_RATE, errors),
        (MetricSignal.CONFIDENCE, confidence),
    ):
        for value in values:
            orchestrator.triggers.record_datapoint(version, signal, float(value), timestamp=stamp)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the rollout scheduler.")
    parser.add_argument("--config", default="config/governance.yaml")
    parser.add_argument("--once", action="store_true", help="Run a single scheduling cycle and exit.")
    parser.add_argument("--max-cycles", type=int, default=12, help="Max cycles for loop mode.")
    parser.add_argument("--interval-seconds", type=float, default=1.0, help="Sleep between cycles.")
    parser.add_argument("--degrade", action="store_true", help="Feed latency that fails step criteria.")
    parser.add_argument("--seed", type=int, default=7)
    args = parser.parse_args()

    configure_logging()
    config = load_config(args.config) if Path(args.config).exists() else ServiceConfig()
    orchestrator = GovernanceOrchestrator.from_config(config)
    for name, status in (("v1", ModelStatus.STABLE), ("v2", ModelStatus.MAINTENANCE)):
        orchestrator.register_model(
            ModelVersion(
                version=name,
                paths=list(config.known_paths),
                performance=_baseline(),
                metadata=ModelMetadata(owner="risk-ml"),
                status=status,
            )
        )
    orchestrator.deploy_canary("v2", target_percentage=100.0)
    _feed_synthetic_metrics(orchestrator, "v2", args.seed, args.degrade)

    scheduler = RolloutScheduler(
        splitter=orchestrator.splitter,
        provider=BufferObservationProvider(orchestrator.triggers.buffer, config.canary.evaluation_window_seconds),
        defaults=config.canary,
        governance=orchestrator.governance,
    )
    if args.once:
        for outcome in scheduler.run_once():
            print(outcome.rollout_id, outcome.action, f"{outcome.current_percentage:g}%")
        return

    outcomes = scheduler.run_forever(args.interval_seconds, max_cycles=max(args.max_cycles, 1))
    print(f"Scheduler decisions: {len(outcomes)}")
    for outcome in outcomes:
        print(outcome.rollout_id, outcome.action, f"{outcome.current_percentage:g}%")


if __name__ == "__main__":
    main()
