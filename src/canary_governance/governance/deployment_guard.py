"""Deterministic traffic bucketing and canary step gating."""

from __future__ import annotations

import hashlib

from .contracts import (
    CriterionResult,
    EvaluationMetric,
    MetricObservation,
    StepCriterion,
)

# Lower is better for these; everything else must meet or exceed its target.
_UPPER_BOUND_METRICS = frozenset(
    {EvaluationMetric.LATENCY_P95, EvaluationMetric.LATENCY_P99, EvaluationMetric.ERROR_RATE}
)


def hash_bucket(key: str, buckets: int = 100) -> int:
    """
    Map key to a bucket in [0, buckets).

    This is stable across services and processes for identical keys.
    """
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    return int(digest[:16], 16) % buckets


def deterministic_canary_assignment(key: str, percentage: float) -> bool:
    """Deterministically assign key to the canary bucket for a 0-100 percentage."""
    if percentage <= 0:
        return False
    if percentage >= 100:
        return True
    return hash_bucket(key) < percentage


def evaluate_criterion(criterion: StepCriterion, actual: MetricObservation | None) -> CriterionResult:
    """Compare one criterion with its observation; a missing observation fails closed."""
    if actual is None:
        return CriterionResult(metric=criterion.metric, expected=0.0, actual=0.0, passed=False, matched=False)
    if criterion.metric in _UPPER_BOUND_METRICS:
        passed = actual.value <= criterion.target
    else:
        passed = actual.value >= criterion.target
    return CriterionResult(
        metric=criterion.metric,
        expected=criterion.target,
        actual=actual.value,
        passed=passed,
    )


def evaluate_criteria(
    criteria: list[StepCriterion],
    observations: list[MetricObservation],
) -> tuple[bool, list[CriterionResult]]:
    """Return (all passed, per-criterion results); observations are matched by metric kind."""
    by_metric: dict[EvaluationMetric, MetricObservation] = {}
    for observation in observations:
        by_metric[observation.metric] = observation
    results = [evaluate_criterion(c, by_metric.get(c.metric)) for c in criteria]
    return all(r.passed for r in results), results
