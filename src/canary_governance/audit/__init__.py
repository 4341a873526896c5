"""Audit trail, scope policy and structured logging."""

from .contracts import AuditEvent, AuditLevel
from .log_format import JsonFormatter, configure_logging
from .scope import ActionScopePolicy
from .sinks import (
    AuditRouter,
    AuditSink,
    FileAuditSink,
    InMemoryAuditSink,
    LoggingAuditSink,
    WebhookAuditSink,
)

__all__ = [
    "ActionScopePolicy",
    "AuditEvent",
    "AuditLevel",
    "AuditRouter",
    "AuditSink",
    "FileAuditSink",
    "InMemoryAuditSink",
    "JsonFormatter",
    "LoggingAuditSink",
    "WebhookAuditSink",
    "configure_logging",
]
