"""Service configuration objects and helpers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass(slots=True)
class ThresholdConfig:
    min_confidence: float = 0.80
    escalation_threshold: float = 0.60
    fallback: str = "deterministic_rules"
    owner: str = "joint"
    previous_version: str | None = None
    product_lead: str | None = None
    sre_oncall: str | None = None


def _default_path_thresholds() -> dict[str, ThresholdConfig]:
    return {
        "escrow": ThresholdConfig(0.85, 0.70, "human_approval", "joint", product_lead="escrow-product", sre_oncall="payments-sre"),
        "compliance": ThresholdConfig(0.90, 0.75, "block_transaction", "joint", product_lead="compliance-product", sre_oncall="platform-sre"),
        "payment": ThresholdConfig(0.80, 0.60, "deterministic_rules", "joint", product_lead="payments-product", sre_oncall="payments-sre"),
    }


@dataclass(slots=True)
class CanaryDefaults:
    schedule: list[float] = field(default_factory=lambda: [5.0, 10.0, 25.0, 50.0, 100.0])
    step_duration_seconds: float = 900.0
    evaluation_window_seconds: float = 300.0
    latency_tolerance: float = 0.10
    error_rate_tolerance: float = 0.50
    confidence_tolerance: float = 0.05
    required_consecutive_passes: int = 2
    pause_on_failure: bool = True


@dataclass(slots=True)
class TriggerTemplate:
    trigger_type: str
    threshold: float
    evaluation_window_seconds: float = 300.0
    min_samples: int = 1
    consecutive_violations: int = 3
    severity: str = "medium"


def _default_trigger_templates() -> list[TriggerTemplate]:
    return [
        TriggerTemplate("latency_drift", 0.50, consecutive_violations=3, severity="high"),
        TriggerTemplate("accuracy_drop", 0.10, consecutive_violations=2, severity="critical"),
        TriggerTemplate("error_rate_spike", 1.00, consecutive_violations=1, severity="critical"),
        TriggerTemplate("confidence_drop", 0.15, consecutive_violations=3, severity="medium"),
        TriggerTemplate("throughput_drop", 0.30, consecutive_violations=3, severity="medium"),
        TriggerTemplate("memory_leak", 0.50, consecutive_violations=5, severity="low"),
        TriggerTemplate("cpu_spike", 0.50, consecutive_violations=5, severity="low"),
    ]


@dataclass(slots=True)
class StatisticalDefaults:
    confidence_level: float = 0.95
    minimum_sample_size: int = 1000
    minimum_detectable_effect: float = 0.02
    power: float = 0.80
    treatment_split: float = 50.0
    traffic_allocation: float = 100.0


@dataclass(slots=True)
class AuditConfig:
    file_path: str | None = None
    webhook_url: str | None = None
    log_events: bool = True


def _default_allowed_actions() -> list[list[str]]:
    return [
        ["canary_splitter", "route_canary"],
        ["rollback_triggers", "auto_rollback"],
        ["orchestrator", "manual_rollback"],
    ]


@dataclass(slots=True)
class ServiceConfig:
    auto_rollback_enabled: bool = True
    rollback_cooldown_seconds: float = 300.0
    step_timeout_scale: float = 1.0
    known_paths: list[str] = field(default_factory=lambda: ["escrow", "compliance", "payment"])
    default_threshold: ThresholdConfig = field(default_factory=ThresholdConfig)
    conservative_threshold: ThresholdConfig = field(
        default_factory=lambda: ThresholdConfig(0.95, 0.80, "human_approval", "sre")
    )
    path_thresholds: dict[str, ThresholdConfig] = field(default_factory=_default_path_thresholds)
    canary: CanaryDefaults = field(default_factory=CanaryDefaults)
    triggers: list[TriggerTemplate] = field(default_factory=_default_trigger_templates)
    ab_testing: StatisticalDefaults = field(default_factory=StatisticalDefaults)
    allowed_actions: list[list[str]] = field(default_factory=_default_allowed_actions)
    audit: AuditConfig = field(default_factory=AuditConfig)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "ServiceConfig":
        defaults = ServiceConfig()
        path_thresholds = payload.get("path_thresholds")
        triggers = payload.get("triggers")
        return ServiceConfig(
            auto_rollback_enabled=bool(payload.get("auto_rollback_enabled", True)),
            rollback_cooldown_seconds=float(payload.get("rollback_cooldown_seconds", 300.0)),
            step_timeout_scale=float(payload.get("step_timeout_scale", 1.0)),
            known_paths=list(payload.get("known_paths", defaults.known_paths)),
            default_threshold=ThresholdConfig(**payload.get("default_threshold", {})),
            conservative_threshold=(
                ThresholdConfig(**payload["conservative_threshold"])
                if "conservative_threshold" in payload
                else defaults.conservative_threshold
            ),
            path_thresholds=(
                {path: ThresholdConfig(**raw) for path, raw in path_thresholds.items()}
                if path_thresholds is not None
                else defaults.path_thresholds
            ),
            canary=CanaryDefaults(**payload.get("canary", {})),
            triggers=(
                [TriggerTemplate(**raw) for raw in triggers]
                if triggers is not None
                else defaults.triggers
            ),
            ab_testing=StatisticalDefaults(**payload.get("ab_testing", {})),
            allowed_actions=[list(pair) for pair in payload.get("allowed_actions", defaults.allowed_actions)],
            audit=AuditConfig(**payload.get("audit", {})),
        )


def load_config(path: str | Path) -> ServiceConfig:
    """Load service configuration from YAML."""
    file_path = Path(path)
    with file_path.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    return ServiceConfig.from_dict(payload)


def save_config(config: ServiceConfig, path: str | Path) -> None:
    """Persist service configuration to YAML."""
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with file_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config.to_dict(), handle, sort_keys=False)
