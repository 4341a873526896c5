"""Error taxonomy shared by the governance components."""

from __future__ import annotations


class GovernanceError(Exception):
    """Base class for all governance errors."""


class ValidationError(GovernanceError, ValueError):
    """Raised for malformed input; nothing has been mutated when it is raised."""


class NotFoundError(GovernanceError, KeyError):
    """Raised when a version, rollout, test or trigger id is unknown."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class StateConflictError(GovernanceError, RuntimeError):
    """Raised when an operation is illegal in the current state."""


class ScopeViolationError(GovernanceError, PermissionError):
    """Raised when a (module, action) pair is outside the allow-list."""

    def __init__(self, module: str, action: str, reason_code: str = "SCOPE_VIOLATION") -> None:
        super().__init__(f"Action '{action}' is not allow-listed for module '{module}'.")
        self.module = module
        self.action = action
        self.reason_code = reason_code
