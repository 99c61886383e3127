"""Implementation plan models: plans, phases, tasks and their statuses."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .exceptions import StateTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkStatus(str, Enum):
    """Lifecycle of a phase or a task."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Complexity(str, Enum):
    """Rough size estimate for a task."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


COMPLEXITY_ALIASES = {"simple": "low", "moderate": "medium", "complex": "high"}


class PlanStatus(str, Enum):
    """Lifecycle of a plan."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# Forward only; FAILED -> IN_PROGRESS is the explicit retry edge
WORK_TRANSITIONS: Dict[WorkStatus, List[WorkStatus]] = {
    WorkStatus.NOT_STARTED: [WorkStatus.IN_PROGRESS, WorkStatus.FAILED],
    WorkStatus.IN_PROGRESS: [WorkStatus.COMPLETED, WorkStatus.FAILED],
    WorkStatus.FAILED: [WorkStatus.IN_PROGRESS],
    WorkStatus.COMPLETED: [],  # Terminal state
}


def is_valid_work_transition(from_status: WorkStatus, to_status: WorkStatus) -> bool:
    """Check if a phase/task status transition is valid."""
    return to_status in WORK_TRANSITIONS.get(from_status, [])


class CheckResult(BaseModel):
    """Outcome of one verification check."""

    name: str
    passed: bool
    output: str = ""


class VerificationRecord(BaseModel):
    """Result of the last Verify step of a task, kept for acceptance checks."""

    passed: bool
    summary: str = ""
    checks: List[CheckResult] = Field(default_factory=list)
    recorded_at: datetime = Field(default_factory=utcnow)


class _Trackable(BaseModel):
    status: WorkStatus = WorkStatus.NOT_STARTED
    skipped: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def transition_to(self, to_status: WorkStatus) -> None:
        """
        Move to a new status.

        Re-entering the current status is a no-op so that resuming an
        interrupted task does not trip the transition check.

        Raises:
            StateTransitionError: If the transition is not allowed
        """
        if to_status == self.status:
            return

        if not is_valid_work_transition(self.status, to_status):
            raise StateTransitionError(
                f"Invalid transition for {self._label()}: "
                f"{self.status.value} -> {to_status.value}"
            )

        self.status = to_status
        if to_status == WorkStatus.IN_PROGRESS:
            self.started_at = self.started_at or utcnow()
            self.completed_at = None
        elif to_status in (WorkStatus.COMPLETED, WorkStatus.FAILED):
            self.completed_at = utcnow()

    def _label(self) -> str:
        return type(self).__name__


class PhaseTask(_Trackable):
    """Smallest unit of work, completed via a generate/verify/review loop."""

    id: str = Field(description="Task identifier, e.g. '1.2'")
    description: str
    target_files: List[str] = Field(default_factory=list)
    complexity: Complexity = Complexity.MEDIUM
    attempt_count: int = Field(default=0, ge=0)
    last_feedback: Optional[str] = None
    verification: Optional[VerificationRecord] = None
    error_message: Optional[str] = None

    @field_validator("complexity", mode="before")
    @classmethod
    def normalize_complexity(cls, v):
        """Map unknown complexity labels onto ``medium``."""
        if isinstance(v, Complexity):
            return v
        value = str(v or "").strip().lower()
        value = COMPLEXITY_ALIASES.get(value, value)
        if value in {c.value for c in Complexity}:
            return value
        return Complexity.MEDIUM

    def _label(self) -> str:
        return f"task {self.id}"


class ImplementationPhase(_Trackable):
    """Named, ordered group of tasks with a checkpoint commit."""

    index: int = Field(ge=1, description="1-based position in the plan")
    name: str
    description: str = ""
    tasks: List[PhaseTask] = Field(default_factory=list)
    acceptance_criteria: List[str] = Field(default_factory=list)

    def _label(self) -> str:
        return f"phase {self.index}"

    def get_task(self, task_id: str) -> Optional[PhaseTask]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def pending_tasks(self) -> List[PhaseTask]:
        """Tasks still to be dispatched, in plan order."""
        return [
            task
            for task in self.tasks
            if task.status != WorkStatus.COMPLETED and not task.skipped
        ]

    def first_failed_task(self) -> Optional[PhaseTask]:
        for task in self.tasks:
            if task.status == WorkStatus.FAILED and not task.skipped:
                return task
        return None

    def acceptance_met(self) -> bool:
        """
        Check completion criteria from stored task results.

        Every task must be completed and its last recorded verification must
        have passed. Nothing is re-run.
        """
        if not self.tasks:
            return False
        return all(
            task.status == WorkStatus.COMPLETED
            and task.verification is not None
            and task.verification.passed
            for task in self.tasks
        )


class ImplementationPlan(BaseModel):
    """Ordered phases of work for one workflow."""

    id: str
    workflow_id: Optional[str] = None
    repository_path: Optional[str] = None
    phases: List[ImplementationPhase] = Field(default_factory=list)
    estimated_duration: Optional[str] = None
    status: PlanStatus = PlanStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def get_phase(self, index: int) -> Optional[ImplementationPhase]:
        for phase in self.phases:
            if phase.index == index:
                return phase
        return None

    def find_task(self, task_id: str) -> Optional[PhaseTask]:
        for phase in self.phases:
            task = phase.get_task(task_id)
            if task is not None:
                return task
        return None

    def next_open_phase(self) -> Optional[ImplementationPhase]:
        """First phase that is neither completed nor skipped."""
        for phase in self.phases:
            if phase.status != WorkStatus.COMPLETED and not phase.skipped:
                return phase
        return None

    def task_count(self) -> int:
        return sum(len(phase.tasks) for phase in self.phases)

    def touch(self) -> None:
        self.updated_at = utcnow()
