from __future__ import annotations

from datetime import timedelta
from pathlib import Path
import json
import logging

import numpy as np
import pandas as pd
import pytest

from canary_governance.analytics import (
    MetricDataPoint,
    MetricIngestionBuffer,
    MetricSignal,
    population_stability_index,
    relative_decrease,
    relative_increase,
    summarize_window,
)
from canary_governance.audit import (
    ActionScopePolicy,
    AuditEvent,
    AuditLevel,
    AuditRouter,
    AuditSink,
    InMemoryAuditSink,
    JsonFormatter,
)
from canary_governance.config import ServiceConfig, load_config, save_config
from canary_governance.errors import GovernanceError, ScopeViolationError
from canary_governance.orchestration import GovernanceOrchestrator
from canary_governance.time_utils import now_utc


class BrokenSink(AuditSink):
    def send(self, event: AuditEvent) -> None:
        raise OSError("disk full")


def test_config_round_trip(tmp_path) -> None:
    config = ServiceConfig()
    config.rollback_cooldown_seconds = 60.0
    config.canary.schedule = [1.0, 5.0, 100.0]
    config.path_thresholds["escrow"].min_confidence = 0.9
    path = tmp_path / "governance.yaml"
    save_config(config, path)

    loaded = load_config(path)
    assert loaded.rollback_cooldown_seconds == 60.0
    assert loaded.canary.schedule == [1.0, 5.0, 100.0]
    assert loaded.path_thresholds["escrow"].min_confidence == 0.9
    assert loaded.triggers[0].trigger_type == "latency_drift"
    assert loaded.allowed_actions == config.allowed_actions


def test_repository_config_builds_orchestrator() -> None:
    config = load_config(Path(__file__).parents[1] / "config" / "governance.yaml")
    config.audit.file_path = None
    orchestrator = GovernanceOrchestrator.from_config(config)
    threshold = orchestrator.governance.get_confidence_threshold("compliance", "v1")
    assert threshold is not None
    assert threshold.min_confidence == config.path_thresholds["compliance"].min_confidence


def test_unknown_config_keys_are_rejected() -> None:
    with pytest.raises(TypeError):
        ServiceConfig.from_dict({"canary": {"schedule": [10.0], "warp_speed": True}})


def test_file_sink_writes_jsonl(tmp_path) -> None:
    path = tmp_path / "audit" / "events.jsonl"
    router = AuditRouter.from_config(file_path=path, log_events=False)
    router.emit("orchestrator", "manual_rollback", "v2", "operator request", level=AuditLevel.WARNING)
    router.emit("canary_splitter", "create_rollout", "r1", "3 steps")

    rows = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [row["action"] for row in rows] == ["manual_rollback", "create_rollout"]
    assert rows[0]["level"] == "warning"
    assert len(router.memory_sink().events(component="orchestrator")) == 1


def test_failing_sink_does_not_block_others() -> None:
    memory = InMemoryAuditSink()
    router = AuditRouter(default_sinks=[BrokenSink(), memory])
    router.emit("rollback_triggers", "rollback_fired", "v2", "error spike", level=AuditLevel.CRITICAL)
    assert len(memory.events()) == 1


def test_critical_events_reach_level_sinks_only() -> None:
    default = InMemoryAuditSink()
    critical = InMemoryAuditSink()
    router = AuditRouter(default_sinks=[default], level_sinks={AuditLevel.CRITICAL: [critical]})
    router.emit("orchestrator", "notify_operators", "plan-1", "immediate rollback", level=AuditLevel.CRITICAL)
    router.emit("orchestrator", "notify_operators", "plan-2", "gradual rollback", level=AuditLevel.WARNING)
    assert len(default.events()) == 2
    assert [e.subject_id for e in critical.events()] == ["plan-1"]


def test_json_formatter_merges_extra_payload() -> None:
    record = logging.LogRecord("canary_governance.audit", logging.WARNING, __file__, 1, "rollback %s", ("v2",), None)
    record.extra = {"component": "orchestrator", "severity": "high"}
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "rollback v2"
    assert payload["level"] == "WARNING"
    assert payload["component"] == "orchestrator"
    assert payload["severity"] == "high"


def test_scope_policy_and_error_taxonomy() -> None:
    policy = ActionScopePolicy.from_pairs([["canary_splitter", "route_canary"]])
    assert policy.allow("canary_splitter", "route_canary")
    assert not policy.allow("rollback_triggers", "auto_rollback")
    with pytest.raises(ScopeViolationError) as excinfo:
        policy.assert_allowed("rollback_triggers", "auto_rollback")
    assert excinfo.value.reason_code == "SCOPE_VIOLATION"
    assert isinstance(excinfo.value, GovernanceError)
    assert isinstance(excinfo.value, PermissionError)


def test_drift_helpers() -> None:
    assert relative_increase(150.0, 100.0) == pytest.approx(0.5)
    assert relative_decrease(0.9, 1.0) == pytest.approx(0.1)
    assert relative_increase(0.2, 0.0) == pytest.approx(0.2)
    assert relative_decrease(0.5, 0.0) == 0.0

    rng = np.random.default_rng(5)
    reference = rng.normal(0.0, 1.0, size=1_000)
    assert population_stability_index(reference.tolist(), reference) == pytest.approx(0.0, abs=1e-9)
    assert population_stability_index([], [1.0]) == 0.0

    stats = summarize_window(pd.Series([1.0, 2.0, 3.0]))
    assert stats["count"] == 3.0
    assert stats["mean"] == 2.0
    assert summarize_window(pd.Series(dtype=float))["count"] == 0.0


def test_metric_signal_rejects_unknown_names() -> None:
    with pytest.raises(ValueError):
        MetricSignal("latency_p50")


def test_buffer_prune_and_window() -> None:
    buffer = MetricIngestionBuffer(max_points_per_signal=3)
    stamp = now_utc()
    for offset, value in enumerate([1.0, 2.0, 3.0, 4.0]):
        buffer.append("v2", MetricSignal.CPU, MetricDataPoint(value, stamp - timedelta(seconds=40 - offset * 10)))
    assert buffer.series("v2", MetricSignal.CPU).tolist() == [2.0, 3.0, 4.0]
    assert buffer.window("v2", MetricSignal.CPU, 10.0).tolist() == [3.0, 4.0]
    assert buffer.prune(stamp - timedelta(seconds=15)) == 2
    assert buffer.latest("v2", MetricSignal.CPU) == 4.0
    assert buffer.versions() == ["v2"]
