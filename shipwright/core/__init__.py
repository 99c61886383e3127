"""Core Shipwright functionality."""

from .assistant import (
    AssistantClient,
    AssistantChunk,
    AssistantSession,
    CliAssistant,
    SessionConfig,
    SessionPool,
)
from .exceptions import (
    AssistantError,
    AssistantTimeoutError,
    ConfigurationError,
    ExecutionError,
    GitOperationError,
    IterationLimitError,
    MemoryNotFoundError,
    NotFoundError,
    RepositoryBusyError,
    ShipwrightError,
    StatePersistenceError,
    StateTransitionError,
    WorkflowNotFoundError,
)
from .file_system import FileSystem, InMemoryFileSystem, LocalFileSystem
from .git_utils import GitRepository
from .locks import KeyedLock
from .output_parser import OutputParser
from .plan import (
    Complexity,
    ImplementationPhase,
    ImplementationPlan,
    PhaseTask,
    PlanStatus,
    VerificationRecord,
    WorkStatus,
)
from .state_persistence import PlanStorage, WorkflowStatePersistence
from .workflow_state import (
    EventType,
    Workflow,
    WorkflowError,
    WorkflowEvent,
    WorkflowStatus,
    get_valid_next_states,
    is_terminal_state,
    is_valid_transition,
)

__all__ = [
    # Exceptions
    "ShipwrightError",
    "ConfigurationError",
    "ExecutionError",
    "AssistantError",
    "AssistantTimeoutError",
    "GitOperationError",
    "IterationLimitError",
    "NotFoundError",
    "WorkflowNotFoundError",
    "MemoryNotFoundError",
    "RepositoryBusyError",
    "StateTransitionError",
    "StatePersistenceError",
    # Collaborators
    "AssistantClient",
    "AssistantChunk",
    "AssistantSession",
    "CliAssistant",
    "SessionConfig",
    "SessionPool",
    "FileSystem",
    "LocalFileSystem",
    "InMemoryFileSystem",
    "GitRepository",
    "KeyedLock",
    "OutputParser",
    # Plan model
    "Complexity",
    "ImplementationPhase",
    "ImplementationPlan",
    "PhaseTask",
    "PlanStatus",
    "VerificationRecord",
    "WorkStatus",
    # Workflow state
    "EventType",
    "Workflow",
    "WorkflowError",
    "WorkflowEvent",
    "WorkflowStatus",
    "is_valid_transition",
    "get_valid_next_states",
    "is_terminal_state",
    # Persistence
    "PlanStorage",
    "WorkflowStatePersistence",
]
