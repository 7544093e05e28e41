"""Exception types raised by the orchestration core."""

from __future__ import annotations

from typing import Optional


class QuorumError(Exception):
    """Base class for orchestration errors."""


class DefinitionError(QuorumError):
    """A workflow definition is unknown, inactive or malformed."""


class DefinitionNotFound(DefinitionError):
    def __init__(self, definition_type: str):
        self.definition_type = definition_type
        super().__init__(f"Workflow definition not found or inactive: {definition_type}")


class InvalidDefinition(DefinitionError):
    """Raised when a definition's state graph references unknown states."""


class TransitionError(QuorumError):
    """A requested machine transition cannot be applied."""


class MachineNotFound(TransitionError):
    def __init__(self, machine_id: str):
        self.machine_id = machine_id
        super().__init__(f"Machine not found: {machine_id}")


class InvalidTransition(TransitionError):
    """Raised when a machine status change is not permitted."""

    def __init__(self, from_status: str, to_status: str, machine_id: Optional[str] = None):
        self.from_status = from_status
        self.to_status = to_status
        self.machine_id = machine_id
        target = f" for machine {machine_id}" if machine_id else ""
        super().__init__(f"Invalid transition{target}: {from_status} -> {to_status}")


class ConcurrentModification(TransitionError):
    """The machine row changed between read and write."""


class DependencyFailure(QuorumError):
    """Storage or bus is unreachable."""
