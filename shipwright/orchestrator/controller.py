"""Workflow lifecycle: planning, phased implementation, validation and control.

Each workflow runs its loop on its own thread; inside a workflow everything is
sequential. Control operations (abort, retry, skip) take the workflow's lock,
change state immediately and signal the loop, which observes the signals
only between steps.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from ..config.models import ShipwrightConfig
from ..core.assistant import SessionPool
from ..core.exceptions import ConfigurationError, IterationLimitError
from ..core.git_utils import GitRepository
from ..core.plan import (
    ImplementationPhase,
    ImplementationPlan,
    PhaseTask,
    PlanStatus,
    WorkStatus,
    utcnow,
)
from ..core.prompt_loader import PromptLoader
from ..core.state_persistence import PlanStorage, WorkflowStatePersistence
from ..core.workflow_state import EventType, Workflow, WorkflowEvent, WorkflowStatus
from ..memory.models import MemoryDiscovery
from ..memory.service import MemoryService, repository_identity
from ..tracking.activity_logger import ActivityKind, ActivityLogger
from .events import EventBroadcaster, EventSubscription
from .phase_runner import GuidanceWriter, MarkdownGuidanceWriter, PhaseRunner
from .plan_generator import PlanGenerator
from .registry import WorkflowRegistry
from .retry_strategy import RetryConfig, RetryStrategy
from .task_executor import TaskContext, TaskExecutor

logger = logging.getLogger(__name__)

GitFactory = Callable[[str], GitRepository]

FINAL_STATUSES = (WorkflowStatus.COMPLETE, WorkflowStatus.FAILED, WorkflowStatus.ABORTED)


class _RunState:
    """Signals shared between control operations and one workflow loop."""

    def __init__(self) -> None:
        self.abort = threading.Event()
        self.skip = threading.Event()
        self.halt = threading.Event()
        self.done = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def should_stop(self) -> bool:
        return self.abort.is_set() or self.skip.is_set() or self.halt.is_set()

    def is_running(self) -> bool:
        return not self.done.is_set()


class OrchestrationController:
    """Starts, drives and controls workflows."""

    def __init__(
        self,
        session_pool: SessionPool,
        config: Optional[ShipwrightConfig] = None,
        memory_service: Optional[MemoryService] = None,
        git_factory: Optional[GitFactory] = None,
        registry: Optional[WorkflowRegistry] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        prompt_loader: Optional[PromptLoader] = None,
        state_dir: Optional[Path] = None,
        guidance_writer: Optional[GuidanceWriter] = None,
    ):
        """Initialize the controller.

        Args:
            session_pool: Pool of assistant sessions shared by all workflows
            config: Configuration (defaults if None)
            memory_service: Memory service for context and discoveries
            git_factory: Builds the VCS collaborator for a repository path
            registry: Workflow registry (persisted under ``state_dir`` if None)
            broadcaster: Event hub (new one if None)
            prompt_loader: Template loader (default: packaged templates)
            state_dir: State directory (default: from config)
            guidance_writer: Receives conventions after each phase
        """
        self.config = config or ShipwrightConfig()
        self.session_pool = session_pool
        self.memory_service = memory_service
        self.state_dir = Path(state_dir) if state_dir else self.config.get_state_dir()
        self.git_factory = git_factory or self._default_git
        self.registry = registry or WorkflowRegistry(
            WorkflowStatePersistence(self.state_dir), PlanStorage(self.state_dir)
        )
        self.broadcaster = broadcaster or EventBroadcaster()
        self.prompt_loader = prompt_loader or PromptLoader()
        self.guidance_writer = guidance_writer or MarkdownGuidanceWriter(
            self.state_dir / "guidance.md"
        )
        self.retry_strategy = RetryStrategy(
            RetryConfig(max_attempts=self.config.execution.max_attempts)
        )
        self.plan_generator = PlanGenerator(
            session_pool, self.prompt_loader, model=self.config.assistant.model
        )

        self._runs: Dict[str, _RunState] = {}
        self._runs_lock = threading.Lock()
        self._activity: Dict[str, ActivityLogger] = {}

    def _default_git(self, repository_path: str) -> GitRepository:
        return GitRepository(Path(repository_path), remote=self.config.git.remote)

    # Control surface

    def start(
        self,
        requirements: str,
        repository_path: str,
        max_iterations: Optional[int] = None,
        use_memory: bool = True,
        store_new_memories: bool = True,
        background: bool = True,
    ) -> Workflow:
        """Create a workflow and run it.

        Args:
            requirements: Free-text description of the change
            repository_path: Repository to change
            max_iterations: Task dispatch budget (default: from config)
            use_memory: Put verified memories into prompts
            store_new_memories: Store facts reported during execution
            background: Run on a worker thread instead of the caller's

        Returns:
            Snapshot of the workflow

        Raises:
            ConfigurationError: If the requirements or limits are invalid
            RepositoryBusyError: If the repository has an active workflow
            GitOperationError: If the workflow branch cannot be created
        """
        try:
            workflow = Workflow(
                repository_path=str(Path(repository_path).expanduser().resolve()),
                requirements=requirements,
                max_iterations=max_iterations or self.config.execution.max_iterations,
                use_memory=use_memory and self.memory_service is not None,
                store_new_memories=store_new_memories and self.memory_service is not None,
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid workflow: {e}") from e

        self.registry.register(workflow)

        if self.config.git.create_branch:
            branch = f"{self.config.git.branch_prefix}{workflow.id}"
            try:
                self.git_factory(workflow.repository_path).create_branch(branch)
            except Exception:
                self.registry.remove(workflow.id, delete_documents=True)
                raise
            with self.registry.lock(workflow.id):
                workflow.branch = branch
                self.registry.save(workflow)
            self._activity_for(workflow.id).log_git_operation("create_branch", {"branch": branch})

        logger.info("Starting workflow %s for %s", workflow.id, workflow.repository_path)
        self._launch(workflow.id, background)
        return self.registry.get(workflow.id)

    def get(self, workflow_id: str) -> Workflow:
        return self.registry.get(workflow_id)

    def list_active(self) -> List[Workflow]:
        return self.registry.list_active()

    def list_all(self) -> List[Workflow]:
        return self.registry.list_all()

    def get_plan(self, workflow_id: str) -> Optional[ImplementationPlan]:
        return self.registry.get_plan(workflow_id)

    def stream_events(self, workflow_id: str) -> EventSubscription:
        """Subscribe to a workflow's events.

        The first event describes the current state. The subscription ends
        after a final event (complete, failed or aborted).

        Raises:
            WorkflowNotFoundError: If the workflow is unknown
        """
        with self.registry.lock(workflow_id):
            workflow = self.registry.live(workflow_id)
            return self.broadcaster.subscribe(workflow_id, self._state_event(workflow))

    def abort(self, workflow_id: str) -> Workflow:
        """Abort a workflow immediately.

        The running step finishes; nothing further is dispatched.

        Raises:
            WorkflowNotFoundError: If the workflow is unknown
        """
        with self.registry.lock(workflow_id):
            workflow = self.registry.live(workflow_id)
            if workflow.is_terminal():
                return workflow.model_copy(deep=True)

            workflow.transition_to(WorkflowStatus.ABORTED, reason="Aborted by user")
            self.registry.save(workflow)
            self._emit(workflow_id, EventType.ERROR, "Workflow aborted", final=True)
            snapshot = workflow.model_copy(deep=True)

        run = self._run_state(workflow_id)
        if run is not None:
            run.abort.set()
        logger.info("Aborted workflow %s", workflow_id)
        return snapshot

    def retry(self, workflow_id: str, background: bool = True) -> Workflow:
        """Reset the failed task and phase and resume the workflow.

        A workflow that failed before it had a plan goes back to planning.
        The iteration budget starts over.

        Raises:
            WorkflowNotFoundError: If the workflow is unknown
        """
        self._settle(workflow_id)
        with self.registry.lock(workflow_id):
            workflow = self.registry.live(workflow_id)
            if workflow.is_terminal() or self._is_running(workflow_id):
                return workflow.model_copy(deep=True)

            plan = self.registry.live_plan(workflow_id)
            if workflow.status == WorkflowStatus.FAILED:
                if plan is None:
                    workflow.transition_to(WorkflowStatus.PLANNING, reason="Retry requested")
                else:
                    self._reset_failed_work(plan)
                    workflow.transition_to(WorkflowStatus.IMPLEMENTATION, reason="Retry requested")
            workflow.iteration_count = 0
            self.registry.save(workflow)
            self.registry.save_plan(workflow_id)
            self._emit(workflow_id, EventType.PROGRESS, "Retrying workflow")

        self._launch(workflow_id, background)
        return self.registry.get(workflow_id)

    def skip(self, workflow_id: str, background: bool = True) -> Workflow:
        """Mark the current task and its phase failed-but-skipped and move on.

        On a running workflow the skip takes effect after the current step;
        a running workflow that is still planning or validating is left as is.

        Raises:
            WorkflowNotFoundError: If the workflow is unknown
        """
        self._settle(workflow_id)
        with self.registry.lock(workflow_id):
            workflow = self.registry.live(workflow_id)
            if workflow.is_terminal():
                return workflow.model_copy(deep=True)

            if self._is_running(workflow_id):
                if workflow.status != WorkflowStatus.IMPLEMENTATION:
                    # Nothing to skip while planning or validating
                    logger.info("Ignoring skip for %s in %s", workflow_id, workflow.status.value)
                    return workflow.model_copy(deep=True)
                self._run_state(workflow_id).skip.set()
                self._emit(workflow_id, EventType.PROGRESS, "Skip requested")
                return workflow.model_copy(deep=True)

            plan = self.registry.live_plan(workflow_id)
            self._apply_skip(workflow)
            if workflow.status == WorkflowStatus.FAILED:
                if plan is None:
                    workflow.transition_to(WorkflowStatus.PLANNING, reason="Skip requested")
                else:
                    workflow.transition_to(WorkflowStatus.IMPLEMENTATION, reason="Skip requested")
            self.registry.save(workflow)
            self.registry.save_plan(workflow_id)

        self._launch(workflow_id, background)
        return self.registry.get(workflow_id)

    def wait(self, workflow_id: str, timeout: Optional[float] = None) -> Workflow:
        """Block until the workflow's loop exits, then return a snapshot."""
        run = self._run_state(workflow_id)
        if run is not None:
            run.done.wait(timeout)
        return self.registry.get(workflow_id)

    def cleanup(self) -> int:
        """Forget completed and aborted workflows whose loops have exited.

        Returns:
            Number of workflows removed from memory
        """
        removed = 0
        for workflow in self.registry.list_all():
            if not workflow.is_terminal() or self._is_running(workflow.id):
                continue
            if self.registry.remove(workflow.id):
                removed += 1
            with self._runs_lock:
                self._runs.pop(workflow.id, None)
                self._activity.pop(workflow.id, None)
        return removed

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        """Stop every loop after its current step and close assistant sessions.

        Workflows keep their status and can be resumed with ``retry``.
        """
        with self._runs_lock:
            runs = list(self._runs.values())
        for run in runs:
            run.halt.set()
        for run in runs:
            if run.thread is not None:
                run.thread.join(timeout)
        self.session_pool.shutdown()

    # Loop

    def _launch(self, workflow_id: str, background: bool) -> None:
        run = _RunState()
        with self._runs_lock:
            existing = self._runs.get(workflow_id)
            if existing is not None and existing.is_running():
                return
            self._runs[workflow_id] = run

        if not background:
            self._run(workflow_id, run)
            return

        run.thread = threading.Thread(
            target=self._run, args=(workflow_id, run), name=f"workflow-{workflow_id}", daemon=True
        )
        run.thread.start()

    def _run(self, workflow_id: str, run: _RunState) -> None:
        try:
            self._drive(workflow_id, run)
        except Exception as e:
            logger.exception("Workflow %s failed", workflow_id)
            self._fail(workflow_id, e)
        finally:
            run.done.set()

    def _drive(self, workflow_id: str, run: _RunState) -> None:
        with self.registry.lock(workflow_id):
            workflow = self.registry.live(workflow_id)
            if workflow.status == WorkflowStatus.PENDING:
                workflow.transition_to(WorkflowStatus.PLANNING)
                self.registry.save(workflow)
                self._emit(
                    workflow_id,
                    EventType.STARTED,
                    "Workflow started",
                    repository=workflow.repository_path,
                    branch=workflow.branch,
                )

        while not run.halt.is_set():
            if run.skip.is_set():
                run.skip.clear()
                with self.registry.lock(workflow_id):
                    workflow = self.registry.live(workflow_id)
                    if workflow.status == WorkflowStatus.IMPLEMENTATION:
                        self._apply_skip(workflow)
                        self.registry.save(workflow)
                        self.registry.save_plan(workflow_id)

            with self.registry.lock(workflow_id):
                status = self.registry.live(workflow_id).status

            if status == WorkflowStatus.PLANNING:
                self._planning(workflow_id)
            elif status == WorkflowStatus.IMPLEMENTATION:
                self._implementation(workflow_id, run)
            elif status == WorkflowStatus.VALIDATION:
                self._validation(workflow_id)
            else:
                return

    def _planning(self, workflow_id: str) -> None:
        with self.registry.lock(workflow_id):
            workflow = self.registry.live(workflow_id)
            requirements = workflow.requirements
            repository_path = workflow.repository_path
            use_memory = workflow.use_memory

        context = self._memory_context(repository_path, requirements) if use_memory else ""
        self._emit(workflow_id, EventType.PROGRESS, "Generating implementation plan")
        plan = self.plan_generator.generate(
            requirements, repository_path, context=context or None, workflow_id=workflow_id
        )

        with self.registry.lock(workflow_id):
            workflow = self.registry.live(workflow_id)
            if workflow.status != WorkflowStatus.PLANNING:
                return
            self.registry.set_plan(workflow_id, plan)
            workflow.plan_id = plan.id
            workflow.transition_to(WorkflowStatus.IMPLEMENTATION, reason="Plan generated")
            self.registry.save(workflow)
            self._emit(
                workflow_id,
                EventType.PROGRESS,
                f"Plan ready: {len(plan.phases)} phases, {plan.task_count()} tasks",
                plan_id=plan.id,
                phases=len(plan.phases),
                tasks=plan.task_count(),
            )

    def _implementation(self, workflow_id: str, run: _RunState) -> None:
        with self.registry.lock(workflow_id):
            workflow = self.registry.live(workflow_id)
            requirements = workflow.requirements
            repository_path = workflow.repository_path
            use_memory = workflow.use_memory
            store_new_memories = workflow.store_new_memories

        git = self.git_factory(repository_path)
        execution = self.config.execution
        executor = TaskExecutor(
            self.session_pool,
            git,
            prompt_loader=self.prompt_loader,
            retry_strategy=self.retry_strategy,
            verify_commands=execution.verify_commands,
            check_timeout=execution.check_timeout_seconds(),
            model=self.config.assistant.model,
        )
        runner = PhaseRunner(
            executor,
            git,
            push_enabled=self.config.git.push_on_phase_complete,
            guidance_writer=self.guidance_writer,
        )
        ctx = TaskContext(
            requirements=requirements,
            repository_path=repository_path,
            memory_context=self._memory_context(repository_path, requirements) if use_memory else "",
            should_stop=run.should_stop,
            on_progress=lambda message, data: self._emit(
                workflow_id, EventType.PROGRESS, message, save_plan=True, **data
            ),
            activity=self._activity_for(workflow_id),
        )

        while not run.should_stop():
            with self.registry.lock(workflow_id):
                workflow = self.registry.live(workflow_id)
                if workflow.status != WorkflowStatus.IMPLEMENTATION:
                    return
                phase = self.registry.live_plan(workflow_id).next_open_phase()
                if phase is None:
                    workflow.transition_to(WorkflowStatus.VALIDATION, reason="All phases done")
                    self.registry.save(workflow)
                    self._emit(workflow_id, EventType.PROGRESS, "Validating completed phases")
                    return
                workflow.current_phase = phase.index
                self.registry.save(workflow)
                self._emit(
                    workflow_id,
                    EventType.PROGRESS,
                    f"Phase {phase.index} started: {phase.name}",
                    phase=phase.index,
                )

            result = runner.run(
                phase, ctx, on_dispatch=lambda p, t: self._on_dispatch(workflow_id, p, t)
            )
            if store_new_memories and result.discoveries:
                self._store_discoveries(workflow_id, repository_path, result.discoveries)

            with self.registry.lock(workflow_id):
                self.registry.save_plan(workflow_id)
                if result.completed or result.stopped:
                    continue

                workflow = self.registry.live(workflow_id)
                if workflow.is_terminal():
                    return
                error = result.error or f"Phase {phase.index} failed"
                workflow.record_error(error, phase=phase.index, task_id=result.failed_task_id)
                workflow.transition_to(WorkflowStatus.FAILED, reason=error)
                self.registry.save(workflow)
                self._emit(
                    workflow_id,
                    EventType.ERROR,
                    f"Phase {phase.index} failed: {error}",
                    final=True,
                    phase=phase.index,
                    task_id=result.failed_task_id,
                )
                return

    def _validation(self, workflow_id: str) -> None:
        with self.registry.lock(workflow_id):
            workflow = self.registry.live(workflow_id)
            if workflow.status != WorkflowStatus.VALIDATION:
                return
            plan = self.registry.live_plan(workflow_id)
            if plan is None:
                unmet = ["plan"]
            else:
                unmet = [
                    str(phase.index)
                    for phase in plan.phases
                    if not phase.skipped
                    and not (phase.status == WorkStatus.COMPLETED and phase.acceptance_met())
                ]

            if unmet:
                error = f"Acceptance criteria not met for phases: {', '.join(unmet)}"
                workflow.record_error(error)
                workflow.transition_to(WorkflowStatus.FAILED, reason=error)
                if plan is not None:
                    plan.status = PlanStatus.FAILED
                self.registry.save(workflow)
                self.registry.save_plan(workflow_id)
                self._emit(workflow_id, EventType.ERROR, error, final=True)
                return

            plan.status = PlanStatus.COMPLETED
            plan.completed_at = utcnow()
            workflow.current_task_id = None
            workflow.transition_to(WorkflowStatus.COMPLETE, reason="All phases accepted")
            self.registry.save(workflow)
            self.registry.save_plan(workflow_id)
            self._emit(workflow_id, EventType.COMPLETED, "Workflow complete", final=True)
        logger.info("Workflow %s complete", workflow_id)

    def _on_dispatch(self, workflow_id: str, phase: ImplementationPhase, task: PhaseTask) -> None:
        with self.registry.lock(workflow_id):
            workflow = self.registry.live(workflow_id)
            if workflow.iteration_count >= workflow.max_iterations:
                raise IterationLimitError(
                    f"Workflow {workflow_id} reached its iteration limit ({workflow.max_iterations})"
                )
            workflow.iteration_count += 1
            workflow.current_phase = phase.index
            workflow.current_task_id = task.id
            self.registry.save(workflow)
            self._emit(
                workflow_id,
                EventType.PROGRESS,
                f"Task {task.id} dispatched: {task.description}",
                phase=phase.index,
                task_id=task.id,
                iteration=workflow.iteration_count,
            )

    def _fail(self, workflow_id: str, error: Exception) -> None:
        with self.registry.lock(workflow_id):
            workflow = self.registry.live(workflow_id)
            if workflow.is_terminal() or workflow.status == WorkflowStatus.FAILED:
                return
            workflow.record_error(error, phase=workflow.current_phase, task_id=workflow.current_task_id)
            workflow.transition_to(WorkflowStatus.FAILED, reason=str(error))
            self.registry.save(workflow)
            self.registry.save_plan(workflow_id)
            self._emit(
                workflow_id,
                EventType.ERROR,
                f"Workflow failed: {error}",
                final=True,
                error_type=type(error).__name__,
            )

    # Helpers

    def _reset_failed_work(self, plan: ImplementationPlan) -> None:
        for phase in plan.phases:
            if phase.skipped or phase.status != WorkStatus.FAILED:
                continue
            for task in phase.tasks:
                if task.status == WorkStatus.FAILED and not task.skipped:
                    task.attempt_count = 0
                    task.error_message = None
                    task.transition_to(WorkStatus.IN_PROGRESS)
            phase.transition_to(WorkStatus.IN_PROGRESS)
            return

    def _apply_skip(self, workflow: Workflow) -> None:
        """Mark the current task and its phase failed and skipped. Caller holds the lock."""
        plan = self.registry.live_plan(workflow.id)
        if plan is None:
            return

        phase = plan.get_phase(workflow.current_phase) if workflow.current_phase else None
        if phase is None or phase.status == WorkStatus.COMPLETED or phase.skipped:
            phase = plan.next_open_phase()
        if phase is None:
            return

        task = phase.get_task(workflow.current_task_id) if workflow.current_task_id else None
        if task is None or task.status == WorkStatus.COMPLETED:
            task = phase.first_failed_task()
        if task is None and phase.pending_tasks():
            task = phase.pending_tasks()[0]

        if task is not None:
            task.skipped = True
            task.transition_to(WorkStatus.FAILED)
        phase.skipped = True
        phase.transition_to(WorkStatus.FAILED)
        workflow.current_task_id = None

        message = f"Skipped phase {phase.index}"
        if task is not None:
            message = f"Skipped task {task.id} and phase {phase.index}"
        self._emit(
            workflow.id,
            EventType.PROGRESS,
            message,
            phase=phase.index,
            task_id=task.id if task else None,
        )

    def _memory_context(self, repository_path: str, requirements: str) -> str:
        if self.memory_service is None:
            return ""
        return self.memory_service.format_context(
            repository_identity(repository_path), requirements
        )

    def _store_discoveries(
        self, workflow_id: str, repository_path: str, discoveries: List[MemoryDiscovery]
    ) -> None:
        if self.memory_service is None:
            return
        stored = self.memory_service.record_discoveries(
            repository_identity(repository_path), discoveries, workflow_id=workflow_id
        )
        if stored:
            self._activity_for(workflow_id).log_event(
                ActivityKind.MEMORY_OPERATION,
                f"Stored {len(stored)} new memories",
                data={"memory_ids": [m.id for m in stored]},
            )

    def _settle(self, workflow_id: str, timeout: float = 5.0) -> None:
        """Let a failed workflow's loop finish exiting before changing its state."""
        run = self._run_state(workflow_id)
        if run is not None and self.registry.get(workflow_id).status == WorkflowStatus.FAILED:
            run.done.wait(timeout)

    def _run_state(self, workflow_id: str) -> Optional[_RunState]:
        with self._runs_lock:
            return self._runs.get(workflow_id)

    def _is_running(self, workflow_id: str) -> bool:
        run = self._run_state(workflow_id)
        return run is not None and run.is_running()

    def _activity_for(self, workflow_id: str) -> ActivityLogger:
        with self._runs_lock:
            activity = self._activity.get(workflow_id)
            if activity is None:
                activity = ActivityLogger(workflow_id, self.config.get_log_dir())
                self._activity[workflow_id] = activity
            return activity

    def _state_event(self, workflow: Workflow) -> WorkflowEvent:
        if workflow.status == WorkflowStatus.COMPLETE:
            event_type = EventType.COMPLETED
        elif workflow.status in (WorkflowStatus.FAILED, WorkflowStatus.ABORTED):
            event_type = EventType.ERROR
        else:
            event_type = EventType.PROGRESS
        return WorkflowEvent(
            type=event_type,
            message=f"Workflow is {workflow.status.value}",
            data={
                "workflow_id": workflow.id,
                "status": workflow.status.value,
                "phase": workflow.current_phase,
                "task_id": workflow.current_task_id,
                "iteration": workflow.iteration_count,
                "final": workflow.status in FINAL_STATUSES,
            },
        )

    def _emit(
        self,
        workflow_id: str,
        event_type: EventType,
        message: str,
        final: bool = False,
        save_plan: bool = False,
        **data: Any,
    ) -> WorkflowEvent:
        """Publish and journal one event under the workflow's lock."""
        with self.registry.lock(workflow_id):
            workflow = self.registry.live(workflow_id)
            if save_plan:
                self.registry.save_plan(workflow_id)
            payload = {k: v for k, v in data.items() if v is not None}
            payload.update(workflow_id=workflow_id, status=workflow.status.value, final=final)
            event = WorkflowEvent(type=event_type, message=message, data=payload)
            self.broadcaster.publish(workflow_id, event)
        self._activity_for(workflow_id).log_workflow_event(event)
        return event
