"""Audit record contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from canary_governance.time_utils import now_utc


class AuditLevel(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(slots=True)
class AuditEvent:
    """One state-changing governance decision."""

    component: str
    action: str
    subject_id: str
    reason: str
    level: AuditLevel = AuditLevel.INFO
    severity: str | None = None
    confidence: float | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=now_utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "component": self.component,
            "action": self.action,
            "subject_id": self.subject_id,
            "level": str(self.level),
            "severity": self.severity,
            "confidence": self.confidence,
            "reason": self.reason,
            "details": self.details,
        }
