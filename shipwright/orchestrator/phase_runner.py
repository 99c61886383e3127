"""Run the tasks of one phase and checkpoint the phase with a commit."""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from ..core.git_utils import GitRepository
from ..core.plan import ImplementationPhase, PhaseTask, WorkStatus
from ..memory.models import MemoryDiscovery
from .task_executor import TaskContext, TaskExecutor

logger = logging.getLogger(__name__)

DispatchHook = Callable[[ImplementationPhase, PhaseTask], None]
GuidanceWriter = Callable[[Sequence[str]], None]


@dataclass
class PhaseResult:
    """Outcome of one pass over a phase."""

    phase_index: int
    completed: bool
    failed_task_id: Optional[str] = None
    stopped: bool = False
    commit: Optional[str] = None
    pushed: bool = False
    conventions: List[str] = field(default_factory=list)
    discoveries: List[MemoryDiscovery] = field(default_factory=list)
    error: Optional[str] = None


class MarkdownGuidanceWriter:
    """Append review conventions to a markdown guidance file, once each."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def existing(self) -> List[str]:
        if not self.path.exists():
            return []
        lines = self.path.read_text(encoding="utf-8").splitlines()
        return [line[2:].strip() for line in lines if line.startswith("- ")]

    def __call__(self, conventions: Sequence[str]) -> None:
        with self._lock:
            known = set(self.existing())
            new = []
            for convention in conventions:
                if convention not in known:
                    known.add(convention)
                    new.append(convention)
            if not new:
                return

            self.path.parent.mkdir(parents=True, exist_ok=True)
            header = "" if self.path.exists() else "# Codebase Guidance\n\n"
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(header)
                for convention in new:
                    f.write(f"- {convention}\n")


class PhaseRunner:
    """Runs a phase's tasks in order and makes the phase checkpoint."""

    def __init__(
        self,
        task_executor: TaskExecutor,
        git: GitRepository,
        push_enabled: bool = True,
        guidance_writer: Optional[GuidanceWriter] = None,
    ):
        """Initialize the phase runner.

        Args:
            task_executor: Executor for single tasks
            git: Repository to checkpoint into
            push_enabled: Push after each phase commit when a remote exists
            guidance_writer: Receives new conventions after a phase completes
        """
        self.task_executor = task_executor
        self.git = git
        self.push_enabled = push_enabled
        self.guidance_writer = guidance_writer

    def run(
        self,
        phase: ImplementationPhase,
        ctx: TaskContext,
        on_dispatch: Optional[DispatchHook] = None,
    ) -> PhaseResult:
        """Run every pending task of ``phase``.

        Completed and skipped tasks are passed over. The run stops at the
        first failed task; later tasks stay ``not_started``. The dispatch hook
        runs before each task and may raise (e.g. ``IterationLimitError``).

        Args:
            phase: Phase to run
            ctx: Workflow inputs and callbacks
            on_dispatch: Called before each task dispatch

        Returns:
            PhaseResult describing the outcome

        Raises:
            GitOperationError: If a commit fails
        """
        result = PhaseResult(phase_index=phase.index, completed=False)

        failed = phase.first_failed_task()
        if failed is not None:
            result.failed_task_id = failed.id
            result.error = failed.error_message
            return result

        for task in phase.pending_tasks():
            if ctx.should_stop():
                result.stopped = True
                return result

            if on_dispatch is not None:
                on_dispatch(phase, task)
            phase.transition_to(WorkStatus.IN_PROGRESS)

            outcome = self.task_executor.execute(task, phase, ctx)
            result.discoveries.extend(outcome.discoveries)
            result.conventions.extend(outcome.conventions)

            if outcome.stopped:
                result.stopped = True
                return result
            if not outcome.completed:
                phase.transition_to(WorkStatus.FAILED)
                result.failed_task_id = task.id
                result.error = outcome.feedback
                return result

        if ctx.should_stop():
            result.stopped = True
            return result

        if not phase.acceptance_met():
            phase.transition_to(WorkStatus.IN_PROGRESS)
            phase.transition_to(WorkStatus.FAILED)
            result.error = f"Phase {phase.index} acceptance criteria not met"
            return result

        self._checkpoint(phase, ctx, result)
        phase.transition_to(WorkStatus.IN_PROGRESS)
        phase.transition_to(WorkStatus.COMPLETED)
        result.completed = True

        if self.guidance_writer is not None and result.conventions:
            self.guidance_writer(result.conventions)

        ctx.progress(
            f"Phase {phase.index} completed: {phase.name}",
            phase=phase.index,
            commit=result.commit,
            pushed=result.pushed,
        )
        return result

    def _checkpoint(self, phase: ImplementationPhase, ctx: TaskContext, result: PhaseResult) -> None:
        message = f"Phase {phase.index}: {phase.name}"
        self.git.stage()
        result.commit = self.git.commit(message)
        if self.push_enabled:
            result.pushed = self.git.push()

        if ctx.activity:
            ctx.activity.log_git_operation(
                "phase_checkpoint",
                {"commit": result.commit, "commit_message": message, "pushed": result.pushed},
            )
        logger.info("Checkpointed phase %d at %s", phase.index, result.commit)
