"""Exception types raised by the plan runner."""

from __future__ import annotations


class PlanRunnerError(Exception):
    """Base class for plan runner errors."""


class NotFoundError(PlanRunnerError, LookupError):
    """A referenced record does not exist."""

    kind = "Record"

    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        super().__init__(f"{self.kind} {identifier} not found")


class PlanNotFoundError(NotFoundError):
    kind = "Plan"


class MemoryNotFoundError(NotFoundError):
    kind = "Memory"


class WorkflowNotFoundError(NotFoundError):
    kind = "Workflow"


class InvalidTransitionError(PlanRunnerError, ValueError):
    """A status change that the lifecycle does not allow."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"{entity} cannot move from {current} to {target}")


class WorkflowControlError(PlanRunnerError):
    """A workflow control action is not valid in the current state."""
