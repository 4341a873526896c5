"""Rollback triggers, decisions, plans and plan execution."""

from .contracts import (
    CheckType,
    ExecutionStatus,
    ImpactAssessment,
    RollbackDecision,
    RollbackExecution,
    RollbackPlan,
    RollbackStep,
    RollbackStrategy,
    RollbackTriggerConfig,
    StepAction,
    StrategyKind,
    TriggerEvaluation,
    VerificationCheck,
    VerificationResult,
)
from .executor import RollbackStepHandler, run_plan
from .trigger_manager import TRIGGER_SIGNALS, RollbackTriggerManager, recommended_actions, select_strategy

__all__ = [
    "CheckType",
    "ExecutionStatus",
    "ImpactAssessment",
    "RollbackDecision",
    "RollbackExecution",
    "RollbackPlan",
    "RollbackStep",
    "RollbackStepHandler",
    "RollbackStrategy",
    "RollbackTriggerConfig",
    "RollbackTriggerManager",
    "StepAction",
    "StrategyKind",
    "TRIGGER_SIGNALS",
    "TriggerEvaluation",
    "VerificationCheck",
    "VerificationResult",
    "recommended_actions",
    "run_plan",
    "select_strategy",
]
