"""Orchestration package."""

from .orchestrator import GovernanceOrchestrator, GovernanceStatus, MetricsUpdateResult, RoutingDecision
from .scheduler import BufferObservationProvider, ObservationProvider, RolloutScheduler, SchedulerOutcome
from .step_handler import GovernanceStepHandler

__all__ = [
    "BufferObservationProvider",
    "GovernanceOrchestrator",
    "GovernanceStatus",
    "GovernanceStepHandler",
    "MetricsUpdateResult",
    "ObservationProvider",
    "RolloutScheduler",
    "RoutingDecision",
    "SchedulerOutcome",
]
