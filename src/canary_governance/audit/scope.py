"""Allow-list of (module, action) pairs that automated decisions may take."""

from __future__ import annotations

from dataclasses import dataclass, field

from canary_governance.errors import ScopeViolationError


@dataclass(slots=True)
class ActionScopePolicy:
    """
    Automated decisions may only act within allow-listed (module, action) pairs.

    Default policy:
      - canary_splitter: route_canary
      - rollback_triggers: auto_rollback
      - orchestrator: manual_rollback
    """

    allowed: set[tuple[str, str]] = field(
        default_factory=lambda: {
            ("canary_splitter", "route_canary"),
            ("rollback_triggers", "auto_rollback"),
            ("orchestrator", "manual_rollback"),
        }
    )

    @staticmethod
    def from_pairs(pairs: list[list[str]]) -> "ActionScopePolicy":
        return ActionScopePolicy(allowed={(str(module), str(action)) for module, action in pairs})

    def allow(self, module: str, action: str) -> bool:
        return (module, action) in self.allowed

    def assert_allowed(self, module: str, action: str) -> None:
        if not self.allow(module, action):
            raise ScopeViolationError(module, action)
