"""Governance modules for model lifecycle, canary rollouts and A/B tests."""

from .ab_testing import analyze_observations, evaluate_hypothesis, required_sample_size
from .canary_splitter import CanaryTrafficSplitter
from .contracts import (
    ABAssignment,
    ABResult,
    ABTestSetup,
    ABTestStatus,
    CanaryRoutingDecision,
    Cohort,
    CriterionResult,
    Direction,
    EvaluationMetric,
    Hypothesis,
    HypothesisResult,
    MetricObservation,
    Rollout,
    RolloutStatus,
    RolloutStep,
    StatisticalConfig,
    StepCriterion,
    StepEvaluation,
)
from .deployment_guard import deterministic_canary_assignment, evaluate_criteria, hash_bucket
from .model_registry import GovernanceMetrics, ModelGovernanceManager, TrafficSplitResult

__all__ = [
    "ABAssignment",
    "ABResult",
    "ABTestSetup",
    "ABTestStatus",
    "CanaryRoutingDecision",
    "CanaryTrafficSplitter",
    "Cohort",
    "CriterionResult",
    "Direction",
    "EvaluationMetric",
    "GovernanceMetrics",
    "Hypothesis",
    "HypothesisResult",
    "MetricObservation",
    "ModelGovernanceManager",
    "Rollout",
    "RolloutStatus",
    "RolloutStep",
    "StatisticalConfig",
    "StepCriterion",
    "StepEvaluation",
    "TrafficSplitResult",
    "analyze_observations",
    "deterministic_canary_assignment",
    "evaluate_criteria",
    "evaluate_hypothesis",
    "hash_bucket",
    "required_sample_size",
]
