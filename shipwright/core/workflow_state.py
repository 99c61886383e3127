"""Workflow state definitions and transitions."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .exceptions import StateTransitionError
from .plan import utcnow

DEFAULT_MAX_ITERATIONS = 50


class WorkflowStatus(str, Enum):
    """Workflow lifecycle states."""

    PENDING = "pending"
    PLANNING = "planning"
    IMPLEMENTATION = "implementation"
    VALIDATION = "validation"
    COMPLETE = "complete"
    FAILED = "failed"
    ABORTED = "aborted"


# Valid state transitions
VALID_TRANSITIONS: Dict[WorkflowStatus, List[WorkflowStatus]] = {
    WorkflowStatus.PENDING: [
        WorkflowStatus.PLANNING,
        WorkflowStatus.FAILED,
        WorkflowStatus.ABORTED,
    ],
    WorkflowStatus.PLANNING: [
        WorkflowStatus.IMPLEMENTATION,
        WorkflowStatus.FAILED,
        WorkflowStatus.ABORTED,
    ],
    WorkflowStatus.IMPLEMENTATION: [
        WorkflowStatus.VALIDATION,
        WorkflowStatus.FAILED,
        WorkflowStatus.ABORTED,
    ],
    WorkflowStatus.VALIDATION: [
        WorkflowStatus.COMPLETE,
        WorkflowStatus.FAILED,
        WorkflowStatus.ABORTED,
    ],
    # Recoverable through retry/skip
    WorkflowStatus.FAILED: [
        WorkflowStatus.IMPLEMENTATION,
        WorkflowStatus.PLANNING,
        WorkflowStatus.ABORTED,
    ],
    WorkflowStatus.COMPLETE: [],  # Terminal state
    WorkflowStatus.ABORTED: [],  # Terminal state
}


def is_valid_transition(from_status: WorkflowStatus, to_status: WorkflowStatus) -> bool:
    """Check if a state transition is valid."""
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def get_valid_next_states(current: WorkflowStatus) -> List[WorkflowStatus]:
    """Get list of valid next states for a given state."""
    return VALID_TRANSITIONS.get(current, [])


def is_terminal_state(status: WorkflowStatus) -> bool:
    """Check if a state is terminal (no further transitions allowed)."""
    return len(VALID_TRANSITIONS.get(status, [])) == 0


class StatusTransition(BaseModel):
    """Represents a state transition event."""

    from_status: WorkflowStatus
    to_status: WorkflowStatus
    timestamp: datetime = Field(default_factory=utcnow)
    reason: Optional[str] = None


class WorkflowError(BaseModel):
    """An error recorded against a workflow."""

    message: str
    error_type: str = "ExecutionError"
    phase: Optional[int] = None
    task_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class Workflow(BaseModel):
    """One end-to-end run from requirements to a committed change set."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    repository_path: str
    requirements: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    current_phase: Optional[int] = None
    current_task_id: Optional[str] = None
    iteration_count: int = Field(default=0, ge=0)
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS)
    errors: List[WorkflowError] = Field(default_factory=list)
    plan_id: Optional[str] = None
    branch: Optional[str] = None
    use_memory: bool = True
    store_new_memories: bool = True
    history: List[StatusTransition] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @field_validator("requirements")
    @classmethod
    def validate_requirements(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Requirements cannot be empty")
        return v

    @field_validator("max_iterations")
    @classmethod
    def validate_max_iterations(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_iterations must be at least 1")
        return v

    def is_terminal(self) -> bool:
        return is_terminal_state(self.status)

    def transition_to(self, to_status: WorkflowStatus, reason: Optional[str] = None) -> None:
        """
        Move the workflow to a new status and record the transition.

        Raises:
            StateTransitionError: If the transition is not allowed
        """
        if not is_valid_transition(self.status, to_status):
            valid = [s.value for s in get_valid_next_states(self.status)]
            raise StateTransitionError(
                f"Invalid transition for workflow {self.id}: "
                f"{self.status.value} -> {to_status.value}. "
                f"Valid transitions: {valid}"
            )

        self.history.append(
            StatusTransition(from_status=self.status, to_status=to_status, reason=reason)
        )
        self.status = to_status
        self.touch()
        if is_terminal_state(to_status):
            self.completed_at = self.updated_at

    def record_error(
        self,
        error: Any,
        phase: Optional[int] = None,
        task_id: Optional[str] = None,
    ) -> WorkflowError:
        """Append an error (exception or message) to the error list."""
        if isinstance(error, BaseException):
            entry = WorkflowError(
                message=str(error) or type(error).__name__,
                error_type=type(error).__name__,
                phase=phase,
                task_id=task_id,
            )
        else:
            entry = WorkflowError(message=str(error), phase=phase, task_id=task_id)
        self.errors.append(entry)
        self.touch()
        return entry

    def touch(self) -> None:
        self.updated_at = utcnow()


class EventType(str, Enum):
    """Kinds of progress events."""

    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    ERROR = "error"


class WorkflowEvent(BaseModel):
    """One record of a workflow's progress stream."""

    type: EventType
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    data: Optional[Dict[str, Any]] = None

    def is_final(self) -> bool:
        """Whether this event closes the stream."""
        return bool(self.data and self.data.get("final"))
