"""Tests for the orchestration controller."""

import threading

import pytest

from shipwright.core.assistant import SessionPool
from shipwright.core.exceptions import (
    AssistantError,
    ConfigurationError,
    GitOperationError,
    RepositoryBusyError,
    WorkflowNotFoundError,
)
from shipwright.core.plan import PlanStatus, WorkStatus
from shipwright.core.state_persistence import PlanStorage, WorkflowStatePersistence
from shipwright.core.workflow_state import EventType, WorkflowStatus
from shipwright.memory.service import repository_identity
from shipwright.orchestrator.registry import WorkflowRegistry
from shipwright.tests.mocks import REJECT, RecordingGit, ScriptedAssistant, generate_output, plan_output
from shipwright.tracking.activity_logger import ActivityKind, ActivityLogger

TWO_PHASES = [
    {
        "name": "Foundation",
        "tasks": [
            {"id": "1.1", "description": "Add the model"},
            {"id": "1.2", "description": "Add storage"},
        ],
    },
    {"name": "API", "tasks": [{"id": "2.1", "description": "Expose the endpoint"}]},
]


@pytest.fixture
def assistant():
    return ScriptedAssistant({"plan": [plan_output(TWO_PHASES)]})


def abort_when(controller, assistant, role, marker):
    """Abort the only workflow once ``role`` is asked about ``marker``."""

    def hook(called_role, prompt):
        if called_role == role and marker in prompt:
            controller.abort(controller.list_all()[0].id)

    assistant.on_call = hook


class TestStart:
    """Test starting and completing workflows."""

    def test_complete_run(self, make_controller, assistant, recording_git, repo_dir):
        """Test a two-phase plan where the first task needs three attempts."""
        assistant.queue("generate", AssistantError("timed out"), "", "Implemented.")
        controller = make_controller()

        workflow = controller.start("Build the API", str(repo_dir), background=False)

        assert workflow.status == WorkflowStatus.COMPLETE
        assert workflow.iteration_count == 3
        assert workflow.branch == f"shipwright/{workflow.id}"
        assert recording_git.branches == [workflow.branch]
        assert recording_git.commits == [
            "Task 1.1: Add the model",
            "Task 1.2: Add storage",
            "Phase 1: Foundation",
            "Task 2.1: Expose the endpoint",
            "Phase 2: API",
        ]

        plan = controller.get_plan(workflow.id)
        assert plan.status == PlanStatus.COMPLETED
        assert plan.find_task("1.1").attempt_count == 3
        assert plan.find_task("1.1").status == WorkStatus.COMPLETED
        assert all(phase.status == WorkStatus.COMPLETED for phase in plan.phases)
        assert [t.from_status for t in workflow.history][:3] == [
            WorkflowStatus.PENDING,
            WorkflowStatus.PLANNING,
            WorkflowStatus.IMPLEMENTATION,
        ]

    def test_fallback_plan(self, make_controller, repo_dir):
        controller = make_controller(session_pool=SessionPool(ScriptedAssistant()))

        workflow = controller.start("Add a --json flag", str(repo_dir), background=False)

        assert workflow.status == WorkflowStatus.COMPLETE
        plan = controller.get_plan(workflow.id)
        assert len(plan.phases) == 1
        assert plan.phases[0].tasks[0].description == "Add a --json flag"

    def test_background_run(self, make_controller, repo_dir):
        controller = make_controller()

        started = controller.start("Build the API", str(repo_dir))
        workflow = controller.wait(started.id, timeout=10)

        assert workflow.status == WorkflowStatus.COMPLETE

    def test_invalid_requirements(self, make_controller, repo_dir):
        controller = make_controller()

        with pytest.raises(ConfigurationError):
            controller.start("   ", str(repo_dir))
        assert controller.list_all() == []

    def test_busy_repository(self, make_controller, assistant, repo_dir):
        """Test a failed workflow keeps the repository until it is aborted."""
        assistant.queue("review", REJECT, REJECT, REJECT)
        controller = make_controller()

        first = controller.start("Build the API", str(repo_dir), background=False)
        assert first.status == WorkflowStatus.FAILED

        with pytest.raises(RepositoryBusyError, match=first.id):
            controller.start("Something else", str(repo_dir), background=False)

        controller.abort(first.id)
        second = controller.start("Something else", str(repo_dir), background=False)
        assert second.status == WorkflowStatus.COMPLETE

    def test_other_repositories_run_in_parallel(self, make_controller, tmp_path):
        controller = make_controller(session_pool=SessionPool(ScriptedAssistant()))
        repos = [tmp_path / "one", tmp_path / "two"]
        for repo in repos:
            repo.mkdir()

        ids = [controller.start("Change it", str(repo)).id for repo in repos]

        assert [controller.wait(i, timeout=10).status for i in ids] == [WorkflowStatus.COMPLETE] * 2

    def test_branch_failure_rolls_back(self, make_controller, repo_dir, state_dir):
        class BrokenGit(RecordingGit):
            def create_branch(self, name, base=None):
                raise GitOperationError("branch exists")

        controller = make_controller(git_factory=lambda path: BrokenGit())

        with pytest.raises(GitOperationError):
            controller.start("Build the API", str(repo_dir))

        assert controller.list_all() == []
        assert controller.registry.repository_owner(str(repo_dir)) is None
        assert list((state_dir / "workflows").glob("*.json")) == []

    def test_branch_creation_disabled(self, make_controller, config, recording_git, repo_dir):
        config.git.create_branch = False
        controller = make_controller(config=config)

        workflow = controller.start("Build the API", str(repo_dir), background=False)

        assert workflow.branch is None
        assert recording_git.branches == []

    def test_planning_failure_fails_workflow(self, make_controller, repo_dir):
        failing = ScriptedAssistant({"plan": [AssistantError("service unavailable")]})
        controller = make_controller(session_pool=SessionPool(failing))

        workflow = controller.start("Build the API", str(repo_dir), background=False)

        assert workflow.status == WorkflowStatus.FAILED
        assert workflow.errors[-1].error_type == "AssistantError"
        assert controller.get_plan(workflow.id) is None

    def test_iteration_limit(self, make_controller, repo_dir):
        controller = make_controller()

        workflow = controller.start(
            "Build the API", str(repo_dir), max_iterations=2, background=False
        )

        assert workflow.status == WorkflowStatus.FAILED
        assert workflow.iteration_count == 2
        assert workflow.errors[-1].error_type == "IterationLimitError"
        assert controller.get_plan(workflow.id).find_task("2.1").status == WorkStatus.NOT_STARTED

    def test_unknown_workflow(self, make_controller):
        controller = make_controller()

        with pytest.raises(WorkflowNotFoundError):
            controller.get("missing")
        with pytest.raises(WorkflowNotFoundError):
            controller.abort("missing")


class TestAbort:
    """Test aborting workflows."""

    def test_abort_mid_phase(self, make_controller, assistant, recording_git, repo_dir):
        """Test abort during task 1.2 keeps task 1.1 committed and dispatches nothing more."""
        controller = make_controller()
        abort_when(controller, assistant, "generate", "Task 1.2")

        workflow = controller.start("Build the API", str(repo_dir), background=False)

        assert workflow.status == WorkflowStatus.ABORTED
        assert recording_git.commits == ["Task 1.1: Add the model"]
        assert assistant.roles_called()[-1] == "generate"
        assert workflow.iteration_count == 2

        plan = controller.get_plan(workflow.id)
        assert plan.find_task("1.1").status == WorkStatus.COMPLETED
        assert plan.find_task("2.1").status == WorkStatus.NOT_STARTED

    def test_abort_releases_repository(self, make_controller, assistant, repo_dir):
        controller = make_controller()
        abort_when(controller, assistant, "plan", "Build the API")

        workflow = controller.start("Build the API", str(repo_dir), background=False)

        assert workflow.status == WorkflowStatus.ABORTED
        assert controller.registry.repository_owner(str(repo_dir)) is None
        assert controller.get_plan(workflow.id) is None

    def test_abort_terminal_is_noop(self, make_controller, repo_dir):
        controller = make_controller()
        workflow = controller.start("Build the API", str(repo_dir), background=False)

        assert controller.abort(workflow.id).status == WorkflowStatus.COMPLETE

    def test_abort_is_immediate(self, make_controller, assistant, repo_dir):
        """Test the status changes before the running step finishes."""
        entered = threading.Event()
        release = threading.Event()

        def slow_generate(prompt):
            entered.set()
            release.wait(10)
            return "Implemented."

        assistant.queue("generate", slow_generate)
        controller = make_controller()
        workflow = controller.start("Build the API", str(repo_dir))
        assert entered.wait(10)

        aborted = controller.abort(workflow.id)
        assert aborted.status == WorkflowStatus.ABORTED
        assert controller.get(workflow.id).status == WorkflowStatus.ABORTED

        release.set()
        final = controller.wait(workflow.id, timeout=10)
        assert final.status == WorkflowStatus.ABORTED
        assert "verify" not in assistant.roles_called()


class TestRetry:
    """Test retrying failed workflows."""

    def test_retry_failed_task(self, make_controller, assistant, recording_git, repo_dir):
        assistant.queue("review", REJECT, REJECT, REJECT)
        controller = make_controller()
        failed = controller.start("Build the API", str(repo_dir), background=False)
        assert failed.status == WorkflowStatus.FAILED
        assert controller.get_plan(failed.id).find_task("1.1").attempt_count == 3

        workflow = controller.retry(failed.id, background=False)

        assert workflow.status == WorkflowStatus.COMPLETE
        assert workflow.iteration_count == 3
        task = controller.get_plan(failed.id).find_task("1.1")
        assert task.attempt_count == 1
        assert task.status == WorkStatus.COMPLETED
        assert "Handle the empty input case" in assistant.prompts_for("generate")[-3]
        assert len(recording_git.commits) == 5

    def test_retry_without_plan_replans(self, make_controller, repo_dir):
        assistant = ScriptedAssistant({"plan": [AssistantError("down")]})
        controller = make_controller(session_pool=SessionPool(assistant))
        failed = controller.start("Build the API", str(repo_dir), background=False)

        workflow = controller.retry(failed.id, background=False)

        assert workflow.status == WorkflowStatus.COMPLETE
        assert assistant.roles_called().count("plan") == 2

    def test_retry_complete_is_noop(self, make_controller, assistant, repo_dir):
        controller = make_controller()
        workflow = controller.start("Build the API", str(repo_dir), background=False)
        calls = len(assistant.calls)

        assert controller.retry(workflow.id, background=False).status == WorkflowStatus.COMPLETE
        assert len(assistant.calls) == calls

    def test_retry_resets_iteration_budget(self, make_controller, repo_dir):
        controller = make_controller()
        failed = controller.start("Build the API", str(repo_dir), max_iterations=2, background=False)
        assert failed.errors[-1].error_type == "IterationLimitError"

        workflow = controller.retry(failed.id, background=False)

        assert workflow.status == WorkflowStatus.COMPLETE
        assert workflow.iteration_count == 1


class TestSkip:
    """Test skipping the current task and phase."""

    def test_skip_failed_task(self, make_controller, assistant, recording_git, repo_dir):
        assistant.queue("review", REJECT, REJECT, REJECT)
        controller = make_controller()
        failed = controller.start("Build the API", str(repo_dir), background=False)

        workflow = controller.skip(failed.id, background=False)

        assert workflow.status == WorkflowStatus.COMPLETE
        plan = controller.get_plan(failed.id)
        assert plan.phases[0].skipped
        assert plan.phases[0].status == WorkStatus.FAILED
        assert plan.find_task("1.1").skipped
        assert plan.find_task("1.2").status == WorkStatus.NOT_STARTED
        assert plan.phases[1].status == WorkStatus.COMPLETED
        assert recording_git.commits == ["Task 2.1: Expose the endpoint", "Phase 2: API"]

    def test_skip_running_task(self, make_controller, assistant, recording_git, repo_dir):
        """Test a skip requested mid-task takes effect after the current step."""
        controller = make_controller()
        requested = []

        def hook(role, prompt):
            if role == "generate" and "Task 1.1" in prompt and not requested:
                requested.append(True)
                controller.skip(controller.list_all()[0].id)

        assistant.on_call = hook

        workflow = controller.start("Build the API", str(repo_dir), background=False)

        assert workflow.status == WorkflowStatus.COMPLETE
        plan = controller.get_plan(workflow.id)
        assert plan.phases[0].skipped
        assert plan.find_task("1.1").skipped
        assert plan.find_task("1.1").attempt_count == 1
        assert recording_git.commits == ["Task 2.1: Expose the endpoint", "Phase 2: API"]

    def test_skip_during_planning_ignored(self, make_controller, assistant, recording_git, repo_dir):
        """Test a skip while the plan is generated leaves the new plan untouched."""
        controller = make_controller()
        seen = []

        def hook(role, prompt):
            if role == "plan":
                seen.append(controller.skip(controller.list_all()[0].id).status)

        assistant.on_call = hook

        workflow = controller.start("Build the API", str(repo_dir), background=False)

        assert seen == [WorkflowStatus.PLANNING]
        assert workflow.status == WorkflowStatus.COMPLETE
        plan = controller.get_plan(workflow.id)
        assert not any(phase.skipped for phase in plan.phases)
        assert recording_git.commits[0] == "Task 1.1: Add the model"
        assert len(recording_git.commits) == 5

    def test_skip_every_phase_completes(self, make_controller, repo_dir):
        assistant = ScriptedAssistant(review=REJECT)
        controller = make_controller(session_pool=SessionPool(assistant))
        failed = controller.start("Build the API", str(repo_dir), background=False)

        assert controller.skip(failed.id, background=False).status == WorkflowStatus.COMPLETE
        assert controller.get_plan(failed.id).phases[0].skipped


class TestEvents:
    """Test progress events."""

    def test_stream_until_complete(self, make_controller, assistant, repo_dir):
        gate = threading.Event()

        def gated_plan(prompt):
            gate.wait(10)
            return plan_output(TWO_PHASES)

        assistant.queues["plan"].clear()
        assistant.queue("plan", gated_plan)
        controller = make_controller()
        workflow = controller.start("Build the API", str(repo_dir))

        subscription = controller.stream_events(workflow.id)
        gate.set()
        events = list(subscription)

        assert events[0].data["workflow_id"] == workflow.id
        messages = [e.message for e in events]
        assert "Plan ready: 2 phases, 3 tasks" in messages
        assert "Task 1.1 dispatched: Add the model" in messages
        assert "Phase 1 completed: Foundation" in messages
        assert events[-1].type == EventType.COMPLETED
        assert events[-1].is_final()
        assert sum(1 for e in events if e.is_final()) == 1

    def test_finished_workflow_streams_state(self, make_controller, repo_dir):
        controller = make_controller()
        workflow = controller.start("Build the API", str(repo_dir), background=False)

        events = list(controller.stream_events(workflow.id))

        assert len(events) == 1
        assert events[0].type == EventType.COMPLETED
        assert events[0].data["status"] == "complete"

    def test_failure_event_is_final(self, make_controller, assistant, repo_dir):
        assistant.queue("review", REJECT, REJECT, REJECT)
        controller = make_controller()
        workflow = controller.start("Build the API", str(repo_dir), background=False)

        events = list(controller.stream_events(workflow.id))

        assert events[-1].type == EventType.ERROR
        assert events[-1].is_final()

    def test_activity_log_written(self, make_controller, config, repo_dir):
        controller = make_controller()
        workflow = controller.start("Build the API", str(repo_dir), background=False)

        log = config.get_log_dir() / "workflows" / f"{workflow.id}.jsonl"
        assert log.exists()
        assert "Workflow complete" in log.read_text()

    def test_commits_journaled(self, make_controller, config, repo_dir):
        controller = make_controller()
        workflow = controller.start("Build the API", str(repo_dir), background=False)

        entries = ActivityLogger(workflow.id, config.get_log_dir()).read_events()
        commits = [e.data for e in entries if e.kind == ActivityKind.GIT_OPERATION]

        assert workflow.status == WorkflowStatus.COMPLETE
        assert [c["git_operation"] for c in commits] == [
            "create_branch",
            "commit",
            "commit",
            "phase_checkpoint",
            "commit",
            "phase_checkpoint",
        ]
        assert commits[1]["commit_message"] == "Task 1.1: Add the model"
        assert commits[3]["commit_message"] == "Phase 1: Foundation"


class TestMemoryIntegration:
    """Test memories flowing into prompts and back out of execution."""

    def test_discoveries_stored(self, make_controller, assistant, memory_service, repo_dir):
        assistant.queue(
            "generate",
            generate_output(
                [{"subject": "docs", "fact": "README describes setup", "citations": ["README.md:1"]}]
            ),
        )
        controller = make_controller()

        workflow = controller.start("Build the API", str(repo_dir), background=False)

        memories = memory_service.list(repository_identity(repo_dir))
        assert [m.subject for m in memories] == ["docs"]
        assert memories[0].created_by_workflow_id == workflow.id

    def test_discoveries_not_stored_when_disabled(self, make_controller, assistant, memory_service, repo_dir):
        assistant.queue(
            "generate",
            generate_output([{"subject": "docs", "fact": "f", "citations": ["README.md:1"]}]),
        )
        controller = make_controller()

        controller.start("Build the API", str(repo_dir), store_new_memories=False, background=False)

        assert memory_service.list(repository_identity(repo_dir)) == []

    def test_verified_memories_in_prompts(self, make_controller, assistant, memory_service, repo_dir):
        (repo_dir / "setup.cfg").write_text("[tool:pytest]\naddopts = -q\n")
        memory_service.create(
            repository_identity(repo_dir), "testing", "pytest runs quietly", ["setup.cfg:2"]
        )
        controller = make_controller()

        controller.start("Build the API", str(repo_dir), background=False)

        assert "pytest runs quietly" in assistant.prompts_for("plan")[0]
        assert "pytest runs quietly" in assistant.prompts_for("generate")[0]

    def test_memory_disabled_for_workflow(self, make_controller, assistant, memory_service, repo_dir):
        (repo_dir / "setup.cfg").write_text("[tool:pytest]\naddopts = -q\n")
        memory_service.create(
            repository_identity(repo_dir), "testing", "pytest runs quietly", ["setup.cfg:2"]
        )
        controller = make_controller()

        controller.start("Build the API", str(repo_dir), use_memory=False, background=False)

        assert "pytest runs quietly" not in assistant.prompts_for("plan")[0]


class TestPersistence:
    """Test state written to the state directory."""

    def test_resume_after_restart(self, make_controller, assistant, repo_dir, state_dir):
        assistant.queue("review", REJECT, REJECT, REJECT)
        first = make_controller()
        failed = first.start("Build the API", str(repo_dir), background=False)

        registry = WorkflowRegistry(WorkflowStatePersistence(state_dir), PlanStorage(state_dir))
        assert registry.load_persisted() == 1
        assert registry.repository_owner(str(repo_dir)) == failed.id

        second = make_controller(
            session_pool=SessionPool(ScriptedAssistant()), registry=registry
        )
        workflow = second.retry(failed.id, background=False)

        assert workflow.status == WorkflowStatus.COMPLETE
        assert second.get_plan(failed.id).find_task("1.1").attempt_count == 1

    def test_cleanup_forgets_finished(self, make_controller, repo_dir):
        controller = make_controller()
        workflow = controller.start("Build the API", str(repo_dir), background=False)

        assert controller.cleanup() == 1
        with pytest.raises(WorkflowNotFoundError):
            controller.get(workflow.id)
        assert controller.list_active() == []
