from __future__ import annotations
from typing import Sequence


class ProvisionError(Exception):
    """Base class for all provisioning errors."""


class ConfigurationError(ProvisionError):
    """Invalid step set. Raised during planning, before any mutation."""


class DuplicateStep(ConfigurationError):
    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"Duplicate step id: {step_id}")


class UnknownDependency(ConfigurationError):
    def __init__(self, step_id: str, missing: str):
        self.step_id = step_id
        self.missing = missing
        super().__init__(f"Step '{step_id}' depends on unknown step '{missing}'")


class CycleDetected(ConfigurationError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__("Dependency cycle detected: " + " -> ".join(self.cycle))


class UnknownStep(ConfigurationError):
    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"Unknown step id: {step_id}")


class ActionFailed(ProvisionError):
    """A step's apply or verify did not succeed. Retried per policy."""

    def __init__(self, message: str, *, returncode: int | None = None, output: str = ""):
        self.returncode = returncode
        self.output = output
        super().__init__(message)


class CommandTimeout(ActionFailed):
    """External command exceeded its timeout and was killed."""


class InvalidTransition(ProvisionError):
    def __init__(self, step_id: str, old: str, new: str, reason: str = ""):
        self.step_id = step_id
        self.old = old
        self.new = new
        msg = f"Invalid transition for '{step_id}': {old} -> {new}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class LockHeld(ProvisionError):
    """Another run holds the state store of this installation root."""


class RunCancelled(ProvisionError):
    """The run was cancelled while a command was in flight."""
