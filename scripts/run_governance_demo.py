"""Walk a canary through deploy, routing, drift-triggered rollback and a manual rollback."""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict
from pathlib import Path

from canary_governance.analytics import ModelMetrics
from canary_governance.audit import configure_logging
from canary_governance.config import ServiceConfig, load_config
from canary_governance.orchestration import GovernanceOrchestrator
from canary_governance.types import ModelMetadata, ModelPerformance, ModelStatus, ModelVersion


def _version(name: str, status: ModelStatus, error_rate: float) -> ModelVersion:
    return ModelVersion(
        version=name,
        paths=["escrow", "payment"],
        performance=ModelPerformance(
            latency_p95_ms=120.0,
            latency_p99_ms=250.0,
            accuracy=0.94,
            error_rate=error_rate,
            confidence=0.88,
            throughput=400.0,
        ),
        metadata=ModelMetadata(owner="risk-ml", description=f"demo {name}"),
        status=status,
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the canary governance demo.")
    parser.add_argument("--config", default="config/governance.yaml", help="Service configuration YAML.")
    parser.add_argument("--requests", type=int, default=1000, help="Synthetic requests to route.")
    parser.add_argument("--out", default="outputs/governance_status.json")
    args = parser.parse_args()

    configure_logging()
    config = load_config(args.config) if Path(args.config).exists() else ServiceConfig()
    config.step_timeout_scale = min(config.step_timeout_scale, 0.1)
    orchestrator = GovernanceOrchestrator.from_config(config)

    orchestrator.register_model(_version("v1", ModelStatus.STABLE, error_rate=0.01))
    orchestrator.register_model(_version("v2", ModelStatus.MAINTENANCE, error_rate=0.01))
    rollout_id = orchestrator.deploy_canary("v2", target_percentage=50.0, paths=["escrow"])
    print(f"Deployed v2 canary via rollout {rollout_id}")

    decisions = [orchestrator.get_routing_decision("escrow", f"req-{i}") for i in range(args.requests)]
    canary_share = sum(d.is_canary for d in decisions) / max(len(decisions), 1)
    print(f"Canary share on escrow: {canary_share:.2%} (min confidence {decisions[0].min_confidence})")

    result = orchestrator.update_model_metrics("v2", ModelMetrics.from_values(error_rate=[0.2, 0.25]))
    print(f"Metrics update on v2: action={result.action} severity={result.decision.severity}")
    if result.plan is not None and result.execution is not None:
        print(f"  plan {result.plan.plan_id}: {result.plan.strategy.kind}, {len(result.plan.steps)} steps")
        print(f"  execution {result.execution.execution_id}: {result.execution.status}")

    orchestrator.register_model(_version("v3", ModelStatus.MAINTENANCE, error_rate=0.008))
    orchestrator.promote_to_stable("v3")
    execution = orchestrator.manual_rollback("v3", "v1", "operator requested")
    print(f"Manual rollback v3 -> v1: {execution.status}")

    status = orchestrator.get_governance_status()
    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(asdict(status), indent=2, default=str), encoding="utf-8")
    print(f"Current stable: {status.current_stable}; status written to {out_path}")


if __name__ == "__main__":
    main()
