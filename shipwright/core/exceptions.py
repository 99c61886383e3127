"""Shipwright exception classes."""


class ShipwrightError(Exception):
    """Base exception for all Shipwright errors."""

    pass


class ConfigurationError(ShipwrightError):
    """Raised when configuration is invalid."""

    pass


class ExecutionError(ShipwrightError):
    """Raised when workflow execution fails."""

    pass


class GitOperationError(ShipwrightError):
    """Raised when git operations fail."""

    pass


class AssistantError(ExecutionError):
    """Raised when the generation assistant fails to answer."""

    pass


class AssistantTimeoutError(AssistantError):
    """Raised when the generation assistant times out."""

    pass


class IterationLimitError(ExecutionError):
    """Raised when a workflow exhausts its iteration budget."""

    pass


class NotFoundError(ShipwrightError):
    """Raised when a workflow or memory does not exist."""

    pass


class WorkflowNotFoundError(NotFoundError):
    """Raised when a workflow id is unknown."""

    pass


class MemoryNotFoundError(NotFoundError):
    """Raised when a memory id is unknown."""

    pass


class RepositoryBusyError(ShipwrightError):
    """Raised when a repository already has an active workflow."""

    pass


class StateTransitionError(ShipwrightError):
    """Raised when an invalid status transition is attempted."""

    pass


class StatePersistenceError(ExecutionError):
    """Raised when state persistence operations fail."""

    pass
