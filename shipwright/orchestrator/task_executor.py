"""Drive one task through bounded Generate / Verify / Review attempts.

Every attempt runs the three steps in order. A failing step ends the attempt
and its feedback is carried into the next Generate prompt. Only an attempt in
which all three steps pass completes the task, followed by exactly one task
commit. Stop signals are observed between steps, never inside one.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from ..core.assistant import SessionConfig, SessionPool
from ..core.exceptions import AssistantError
from ..core.git_utils import GitRepository
from ..core.output_parser import OutputParser
from ..core.plan import (
    ImplementationPhase,
    PhaseTask,
    VerificationRecord,
    WorkStatus,
)
from ..core.prompt_loader import PromptLoader
from ..memory.models import MemoryDiscovery
from ..tracking.activity_logger import ActivityLogger
from .checks import format_check_results, run_checks
from .retry_strategy import RetryDecision, RetryStrategy

logger = logging.getLogger(__name__)

CODER_ROLE = (
    "You are a careful software engineer implementing one task of a larger "
    "plan. Change only what the task needs."
)
TESTER_ROLE = (
    "You are a meticulous tester. You check changes and report a verdict; you "
    "never modify files."
)
REVIEWER_ROLE = (
    "You are a senior code reviewer. You judge changes for correctness and "
    "consistency with the codebase; you never modify files."
)

ProgressCallback = Callable[[str, Dict[str, Any]], None]


def _never() -> bool:
    return False


@dataclass
class TaskContext:
    """Workflow-level inputs shared by every task of a run."""

    requirements: str
    repository_path: str
    memory_context: str = ""
    should_stop: Callable[[], bool] = _never
    on_progress: Optional[ProgressCallback] = None
    activity: Optional[ActivityLogger] = None

    def progress(self, message: str, **data: Any) -> None:
        if self.on_progress is not None:
            self.on_progress(message, data)


@dataclass
class TaskExecutionResult:
    """Result of running a task to completion, exhaustion or a stop signal."""

    task_id: str
    completed: bool
    attempts: int
    feedback: Optional[str] = None
    commit: Optional[str] = None
    discoveries: List[MemoryDiscovery] = field(default_factory=list)
    conventions: List[str] = field(default_factory=list)
    stopped: bool = False
    duration_seconds: float = 0.0


@dataclass
class _StepOutcome:
    passed: bool
    feedback: str = ""
    output: str = ""


def _find_key(output: str, key: str) -> Dict[str, Any]:
    """First JSON object in ``output`` carrying ``key``, or an empty dict."""
    data = OutputParser.extract_json(output)
    if key in data:
        return data
    for _, block in OutputParser.iter_balanced_objects(output):
        decoded = OutputParser.first_json_object(block)
        if decoded and key in decoded:
            return decoded
    return {}


def parse_discoveries(output: str) -> List[MemoryDiscovery]:
    """Read the ``memories`` report from Generate output.

    Malformed entries are dropped; a discovery without citations is kept here
    and rejected later by the memory service.
    """
    raw = _find_key(output, "memories").get("memories")
    if not isinstance(raw, list):
        return []

    discoveries = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        try:
            discoveries.append(MemoryDiscovery.model_validate(entry))
        except ValidationError as e:
            logger.debug("Ignoring malformed memory report: %s", e)
    return discoveries


def parse_conventions(output: str) -> List[str]:
    raw = _find_key(output, "conventions").get("conventions")
    if not isinstance(raw, list):
        return []
    return [str(c).strip() for c in raw if str(c).strip()]


class TaskExecutor:
    """Runs the generate/verify/review loop for single tasks."""

    def __init__(
        self,
        session_pool: SessionPool,
        git: GitRepository,
        prompt_loader: Optional[PromptLoader] = None,
        retry_strategy: Optional[RetryStrategy] = None,
        verify_commands: Sequence[str] = (),
        check_timeout: int = 600,
        model: Optional[str] = None,
    ):
        """Initialize the task executor.

        Args:
            session_pool: Pool of assistant sessions
            git: Repository the task commits into
            prompt_loader: Template loader (default: packaged templates)
            retry_strategy: Attempt bound (default: 3 attempts)
            verify_commands: Shell commands run on every Verify step
            check_timeout: Timeout in seconds per check command
            model: Model override for every role
        """
        self.session_pool = session_pool
        self.git = git
        self.prompt_loader = prompt_loader or PromptLoader()
        self.retry_strategy = retry_strategy or RetryStrategy()
        self.verify_commands = list(verify_commands)
        self.check_timeout = check_timeout
        self.model = model

    @property
    def max_attempts(self) -> int:
        return self.retry_strategy.max_attempts

    def execute(
        self, task: PhaseTask, phase: ImplementationPhase, ctx: TaskContext
    ) -> TaskExecutionResult:
        """Run ``task`` until it completes, exhausts its attempts or is stopped.

        The task is mutated in place: status, attempt count, last feedback and
        verification record.

        Args:
            task: Task to run; resumes from its current attempt count
            phase: Phase the task belongs to
            ctx: Workflow inputs and callbacks

        Returns:
            TaskExecutionResult describing the outcome

        Raises:
            GitOperationError: If the task commit fails
        """
        start_time = time.time()
        task.transition_to(WorkStatus.IN_PROGRESS)
        task.error_message = None

        def result(**kwargs: Any) -> TaskExecutionResult:
            return TaskExecutionResult(
                task_id=task.id,
                attempts=task.attempt_count,
                feedback=task.last_feedback,
                duration_seconds=time.time() - start_time,
                **kwargs,
            )

        while task.attempt_count < self.max_attempts:
            if ctx.should_stop():
                return result(completed=False, stopped=True)

            task.attempt_count += 1
            attempt = task.attempt_count
            ctx.progress(
                f"Task {task.id}: attempt {attempt}/{self.max_attempts}",
                task_id=task.id,
                phase=phase.index,
                attempt=attempt,
            )
            if ctx.activity:
                ctx.activity.log_task_start(task.id, task.description, attempt)

            outcome, discoveries = self._generate(task, phase, ctx)
            if outcome.passed:
                if ctx.should_stop():
                    return result(completed=False, stopped=True)
                outcome = self._verify(task, ctx)

            conventions: List[str] = []
            if outcome.passed:
                if ctx.should_stop():
                    return result(completed=False, stopped=True)
                outcome = self._review(task, ctx)
                conventions = parse_conventions(outcome.output)

            decision = self.retry_strategy.decide(attempt, outcome.passed)
            if decision == RetryDecision.COMPLETE:
                if ctx.should_stop():
                    return result(completed=False, stopped=True)
                commit = self._commit_task(task, ctx)
                task.transition_to(WorkStatus.COMPLETED)
                duration_ms = int((time.time() - start_time) * 1000)
                if ctx.activity:
                    ctx.activity.log_task_complete(task.id, attempt, duration_ms)
                ctx.progress(
                    self.retry_strategy.get_retry_message(decision, attempt),
                    task_id=task.id,
                    phase=phase.index,
                    commit=commit,
                )
                return result(
                    completed=True,
                    commit=commit,
                    discoveries=discoveries,
                    conventions=conventions,
                )

            task.last_feedback = outcome.feedback
            ctx.progress(
                self.retry_strategy.get_retry_message(decision, attempt, outcome.feedback),
                task_id=task.id,
                phase=phase.index,
                attempt=attempt,
            )
            if decision == RetryDecision.FAIL:
                break

        return self._fail(task, ctx, start_time, result)

    def _fail(self, task: PhaseTask, ctx: TaskContext, start_time: float, result):
        error = task.last_feedback or "Task failed"
        task.error_message = error
        task.transition_to(WorkStatus.FAILED)
        if ctx.activity:
            ctx.activity.log_task_fail(task.id, error, int((time.time() - start_time) * 1000))
        logger.info("Task %s failed after %d attempts", task.id, task.attempt_count)
        return result(completed=False)

    def _ask(self, role: str, system_prompt: str, prompt: str, task: PhaseTask, ctx: TaskContext) -> str:
        config = SessionConfig(
            working_dir=ctx.repository_path, model=self.model, system_prompt=system_prompt
        )
        started = time.time()
        with self.session_pool.session(config) as session:
            output = session.send(prompt)
        if ctx.activity:
            ctx.activity.log_assistant_interaction(
                role,
                prompt,
                OutputParser.sanitize_output(output, 200),
                int((time.time() - started) * 1000),
                task_id=task.id,
            )
        return output

    def _generate(
        self, task: PhaseTask, phase: ImplementationPhase, ctx: TaskContext
    ) -> Tuple[_StepOutcome, List[MemoryDiscovery]]:
        prompt = self.prompt_loader.render_template(
            "generate",
            {
                "task_id": task.id,
                "phase_name": phase.name,
                "task_description": task.description,
                "requirements": ctx.requirements,
                "target_files": task.target_files,
                "context": ctx.memory_context,
                "feedback": task.last_feedback,
                "attempt": task.attempt_count,
                "max_attempts": self.max_attempts,
            },
        )
        try:
            output = self._ask("coder", CODER_ROLE, prompt, task, ctx)
        except AssistantError as e:
            return _StepOutcome(False, f"Generate step failed: {e}"), []

        if not output or not output.strip():
            return _StepOutcome(False, "Generate step produced no output"), []

        return _StepOutcome(True, output=output), parse_discoveries(output)

    def _verify(self, task: PhaseTask, ctx: TaskContext) -> _StepOutcome:
        checks = run_checks(self.verify_commands, Path(ctx.repository_path), self.check_timeout)
        check_summary = format_check_results(checks)

        prompt = self.prompt_loader.render_template(
            "verify",
            {
                "task_id": task.id,
                "task_description": task.description,
                "target_files": task.target_files,
                "check_results": check_summary,
            },
        )
        try:
            output = self._ask("tester", TESTER_ROLE, prompt, task, ctx)
        except AssistantError as e:
            task.verification = VerificationRecord(passed=False, summary=str(e), checks=checks)
            return _StepOutcome(False, f"Verify step failed: {e}")

        verdict = OutputParser.find_verdict(output, "passed")
        data = _find_key(output, "passed")
        summary = str(data.get("summary") or OutputParser.sanitize_output(output, 1000))
        passed = verdict is True and all(check.passed for check in checks)
        task.verification = VerificationRecord(passed=passed, summary=summary, checks=checks)

        if passed:
            return _StepOutcome(True, output=output)

        lines = [f"Verification failed: {summary}"]
        issues = data.get("issues")
        if isinstance(issues, list):
            lines.extend(f"- {issue}" for issue in issues)
        failed_checks = [check for check in checks if not check.passed]
        if failed_checks:
            lines.append("")
            lines.append(format_check_results(failed_checks))
        return _StepOutcome(False, "\n".join(lines), output)

    def _review(self, task: PhaseTask, ctx: TaskContext) -> _StepOutcome:
        summary = task.verification.summary if task.verification else ""
        prompt = self.prompt_loader.render_template(
            "review",
            {
                "task_id": task.id,
                "task_description": task.description,
                "verification_summary": summary or "Verification passed",
            },
        )
        try:
            output = self._ask("reviewer", REVIEWER_ROLE, prompt, task, ctx)
        except AssistantError as e:
            return _StepOutcome(False, f"Review step failed: {e}")

        approved = OutputParser.find_verdict(output, "approved")
        feedback = _find_key(output, "approved").get("feedback")
        if approved is True:
            return _StepOutcome(True, str(feedback or ""), output)

        feedback = feedback or OutputParser.sanitize_output(output, 1000)
        return _StepOutcome(False, f"Review rejected the change: {feedback}", output)

    def _commit_task(self, task: PhaseTask, ctx: TaskContext) -> str:
        headline = task.description.strip().splitlines()[0] if task.description.strip() else ""
        message = f"Task {task.id}: {headline}".rstrip(": ")
        self.git.stage()
        commit = self.git.commit(message)
        if ctx.activity:
            ctx.activity.log_git_operation(
                "commit", {"commit": commit, "commit_message": message}, task_id=task.id
            )
        return commit
