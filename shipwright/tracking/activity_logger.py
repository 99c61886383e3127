"""Activity journal for workflow runs.

Each workflow gets a JSONL file at ``<logs_dir>/workflows/<id>.jsonl``.
Every progress event is written there along with git operations and
assistant interactions, so a run can be reconstructed after the fact.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from ..core.workflow_state import WorkflowEvent

logger = logging.getLogger(__name__)


class ActivityKind(str, Enum):
    """Types of entries that can be journaled."""

    WORKFLOW_EVENT = "workflow_event"
    TASK_START = "task_start"
    TASK_COMPLETE = "task_complete"
    TASK_FAIL = "task_fail"
    ASSISTANT_INTERACTION = "assistant_interaction"
    GIT_OPERATION = "git_operation"
    MEMORY_OPERATION = "memory_operation"


class ActivityEvent(BaseModel):
    """Activity event model."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    kind: ActivityKind = Field(..., description="Type of entry")
    workflow_id: str = Field(..., description="Workflow identifier")
    task_id: Optional[str] = Field(None, description="Task identifier")
    phase: Optional[int] = Field(None, description="Phase index")
    message: str = Field(..., description="Entry message")
    data: Dict[str, Any] = Field(default_factory=dict, description="Additional data")
    duration_ms: Optional[int] = Field(None, description="Duration in milliseconds")


class ActivityLogger:
    """Thread-safe JSONL journal for one workflow."""

    def __init__(self, workflow_id: str, logs_dir: Path):
        """Initialize activity logger.

        Args:
            workflow_id: Workflow the journal belongs to
            logs_dir: Root directory for log files
        """
        self.workflow_id = workflow_id
        self.log_dir = Path(logs_dir) / "workflows"
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = self.log_dir / f"{workflow_id}.jsonl"
        self._lock = threading.Lock()

    def log_event(
        self,
        kind: ActivityKind,
        message: str,
        task_id: Optional[str] = None,
        phase: Optional[int] = None,
        duration_ms: Optional[int] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Journal a general activity entry.

        Args:
            kind: Type of entry
            message: Entry message
            task_id: Optional task identifier
            phase: Optional phase index
            duration_ms: Optional duration
            data: Additional entry data
        """
        self._write(
            ActivityEvent(
                kind=kind,
                workflow_id=self.workflow_id,
                task_id=task_id,
                phase=phase,
                message=message,
                data=dict(data or {}),
                duration_ms=duration_ms,
            )
        )

    def log_workflow_event(self, event: WorkflowEvent) -> None:
        """Journal a progress event exactly as it was broadcast."""
        data = dict(event.data or {})
        self.log_event(
            ActivityKind.WORKFLOW_EVENT,
            event.message,
            task_id=data.get("task_id"),
            phase=data.get("phase"),
            data={
                "event_type": event.type.value,
                **{k: v for k, v in data.items() if k not in ("task_id", "phase")},
            },
        )

    def log_task_start(self, task_id: str, description: str, attempt: int) -> None:
        self.log_event(
            ActivityKind.TASK_START,
            f"Task started: {description}",
            task_id=task_id,
            data={"attempt": attempt},
        )

    def log_task_complete(self, task_id: str, attempts: int, duration_ms: int) -> None:
        self.log_event(
            ActivityKind.TASK_COMPLETE,
            "Task completed successfully",
            task_id=task_id,
            duration_ms=duration_ms,
            data={"attempts": attempts},
        )

    def log_task_fail(self, task_id: str, error: str, duration_ms: int) -> None:
        self.log_event(
            ActivityKind.TASK_FAIL,
            f"Task failed: {error}",
            task_id=task_id,
            duration_ms=duration_ms,
            data={"error": error},
        )

    def log_assistant_interaction(
        self,
        role: str,
        prompt: str,
        response_summary: str,
        duration_ms: int,
        task_id: Optional[str] = None,
    ) -> None:
        """Journal one prompt/response exchange with the assistant."""
        self.log_event(
            ActivityKind.ASSISTANT_INTERACTION,
            f"Assistant {role} interaction",
            task_id=task_id,
            duration_ms=duration_ms,
            data={
                "role": role,
                "prompt_chars": len(prompt),
                "response_summary": response_summary,
            },
        )

    def log_git_operation(
        self, operation: str, details: Dict[str, Any], task_id: Optional[str] = None
    ) -> None:
        """Journal a git operation (commit, push, branch)."""
        self.log_event(
            ActivityKind.GIT_OPERATION,
            f"Git {operation}",
            task_id=task_id,
            data={"git_operation": operation, **details},
        )

    def read_events(self) -> List[ActivityEvent]:
        """Read every readable entry, skipping malformed lines."""
        events: List[ActivityEvent] = []
        if not self.log_file.exists():
            return events

        with open(self.log_file, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    events.append(ActivityEvent(**json.loads(line)))
                except (json.JSONDecodeError, ValidationError):
                    continue
        return events

    def get_recent_events(self, limit: int = 100) -> List[ActivityEvent]:
        return self.read_events()[-limit:]

    def _write(self, event: ActivityEvent) -> None:
        """Append one entry. A failed write is reported, never raised."""
        with self._lock:
            try:
                with open(self.log_file, "a", encoding="utf-8") as f:
                    json.dump(event.model_dump(mode="json"), f, default=str, separators=(",", ":"))
                    f.write("\n")
            except OSError as e:
                logger.warning("Failed to write activity log %s: %s", self.log_file, e)
