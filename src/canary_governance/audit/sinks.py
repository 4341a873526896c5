"""Audit sinks and level-based routing."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
import json
import logging
import threading
import urllib.request

from .contracts import AuditEvent, AuditLevel

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    AuditLevel.INFO: logging.INFO,
    AuditLevel.WARNING: logging.WARNING,
    AuditLevel.CRITICAL: logging.CRITICAL,
}


class AuditSink(ABC):
    """Abstract sink for audit events."""

    @abstractmethod
    def send(self, event: AuditEvent) -> None:
        """Deliver one audit event."""


class LoggingAuditSink(AuditSink):
    """Write audit events to the `canary_governance.audit` logger."""

    def __init__(self, logger_name: str = "canary_governance.audit") -> None:
        self._logger = logging.getLogger(logger_name)

    def send(self, event: AuditEvent) -> None:
        payload = event.to_dict()
        self._logger.log(
            _LOG_LEVELS[event.level],
            "%s.%s %s: %s",
            event.component,
            event.action,
            event.subject_id,
            event.reason,
            extra={"extra": payload},
        )


class FileAuditSink(AuditSink):
    """Persist audit events as JSONL."""

    def __init__(self, output_path: str | Path) -> None:
        self.output_path = Path(output_path)
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def send(self, event: AuditEvent) -> None:
        with self._lock, self.output_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(event.to_dict(), default=str) + "\n")


class InMemoryAuditSink(AuditSink):
    """Bounded in-process audit trail, read back by status queries and tests."""

    def __init__(self, max_events: int = 5_000) -> None:
        self.max_events = max_events
        self._events: list[AuditEvent] = []
        self._lock = threading.Lock()

    def send(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)
            if len(self._events) > self.max_events:
                del self._events[: len(self._events) - self.max_events]

    def events(self, action: str | None = None, component: str | None = None) -> list[AuditEvent]:
        with self._lock:
            return [
                e
                for e in self._events
                if (action is None or e.action == action) and (component is None or e.component == component)
            ]


class WebhookAuditSink(AuditSink):
    """Forward audit events to a webhook (SIEM/Slack/PagerDuty proxy)."""

    def __init__(self, webhook_url: str, timeout_seconds: int = 5) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds

    def send(self, event: AuditEvent) -> None:
        payload = json.dumps(event.to_dict(), default=str).encode("utf-8")
        request = urllib.request.Request(
            url=self.webhook_url,
            data=payload,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        with urllib.request.urlopen(request, timeout=self.timeout_seconds):
            return


@dataclass(slots=True)
class AuditRouter:
    """
    Routes audit events by level to configured sinks.

    default_sinks are always used; level_sinks are additive. A failing sink is
    logged and skipped so that one broken destination does not block the others.
    """

    default_sinks: list[AuditSink] = field(default_factory=list)
    level_sinks: dict[AuditLevel, list[AuditSink]] = field(default_factory=dict)

    def route(self, event: AuditEvent) -> None:
        sinks: list[AuditSink] = list(self.default_sinks)
        sinks.extend(self.level_sinks.get(event.level, []))
        for sink in sinks:
            try:
                sink.send(event)
            except OSError:
                logger.exception("Audit sink %s failed for %s.%s", type(sink).__name__, event.component, event.action)

    def emit(
        self,
        component: str,
        action: str,
        subject_id: str,
        reason: str,
        level: AuditLevel = AuditLevel.INFO,
        severity: str | None = None,
        confidence: float | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEvent:
        event = AuditEvent(
            component=component,
            action=action,
            subject_id=subject_id,
            reason=reason,
            level=level,
            severity=severity,
            confidence=confidence,
            details=details or {},
        )
        self.route(event)
        return event

    def memory_sink(self) -> InMemoryAuditSink | None:
        for sink in self.default_sinks:
            if isinstance(sink, InMemoryAuditSink):
                return sink
        return None

    @staticmethod
    def in_memory() -> "AuditRouter":
        return AuditRouter(default_sinks=[InMemoryAuditSink()])

    @staticmethod
    def from_config(
        file_path: str | Path | None = None,
        webhook_url: str | None = None,
        log_events: bool = True,
    ) -> "AuditRouter":
        sinks: list[AuditSink] = [InMemoryAuditSink()]
        if log_events:
            sinks.append(LoggingAuditSink())
        if file_path:
            sinks.append(FileAuditSink(file_path))
        level_sinks: dict[AuditLevel, list[AuditSink]] = {}
        if webhook_url:
            # Only escalations leave the process.
            hook = WebhookAuditSink(webhook_url)
            level_sinks = {AuditLevel.WARNING: [hook], AuditLevel.CRITICAL: [hook]}
        return AuditRouter(default_sinks=sinks, level_sinks=level_sinks)
