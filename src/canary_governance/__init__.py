"""Canary governance package."""

from .config import (
    AuditConfig,
    CanaryDefaults,
    ServiceConfig,
    StatisticalDefaults,
    ThresholdConfig,
    TriggerTemplate,
)

__all__ = [
    "AuditConfig",
    "CanaryDefaults",
    "ServiceConfig",
    "StatisticalDefaults",
    "ThresholdConfig",
    "TriggerTemplate",
]
