"""Tests for the generate/verify/review task loop."""

import sys

import pytest

from shipwright.core.assistant import SessionPool
from shipwright.core.exceptions import AssistantError, GitOperationError
from shipwright.core.plan import ImplementationPhase, PhaseTask, WorkStatus
from shipwright.orchestrator.checks import format_check_results, run_check
from shipwright.orchestrator.retry_strategy import (
    RetryConfig,
    RetryDecision,
    RetryStrategy,
)
from shipwright.orchestrator.task_executor import (
    TaskContext,
    TaskExecutor,
    parse_conventions,
    parse_discoveries,
)
from shipwright.tests.mocks import (
    FAIL_VERIFY,
    REJECT,
    RecordingGit,
    ScriptedAssistant,
    generate_output,
)


@pytest.fixture
def phase():
    return ImplementationPhase(
        index=1,
        name="Core",
        tasks=[PhaseTask(id="1.1", description="Add the model\nwith details")],
    )


@pytest.fixture
def task(phase):
    return phase.tasks[0]


@pytest.fixture
def ctx(repo_dir):
    return TaskContext(requirements="Build the thing", repository_path=str(repo_dir))


def make_executor(assistant, git=None, **kwargs):
    return TaskExecutor(SessionPool(assistant), git or RecordingGit(), **kwargs)


class TestRetryStrategy:
    """Test the attempt bound."""

    def test_decisions(self):
        strategy = RetryStrategy()

        assert strategy.decide(1, passed=True) == RetryDecision.COMPLETE
        assert strategy.decide(1, passed=False) == RetryDecision.RETRY
        assert strategy.decide(2, passed=False) == RetryDecision.RETRY
        assert strategy.decide(3, passed=False) == RetryDecision.FAIL

    def test_config_bounds(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=11)

    def test_messages(self):
        strategy = RetryStrategy()

        assert "attempt 2/3" in strategy.get_retry_message(RetryDecision.RETRY, 1)
        assert "after 3 attempts: boom" in strategy.get_retry_message(RetryDecision.FAIL, 3, "boom")
        assert strategy.get_retry_message(RetryDecision.COMPLETE, 1) == "Task completed successfully"


class TestReportParsing:
    """Test parsing of discoveries and conventions."""

    def test_discoveries(self):
        output = generate_output(
            [
                {"subject": "testing", "fact": "Uses pytest", "citations": ["pyproject.toml:3"]},
                {"fact": "missing subject"},
                "not a dict",
            ]
        )

        discoveries = parse_discoveries(output)

        assert [d.subject for d in discoveries] == ["testing"]
        assert discoveries[0].citations[0].line_number == 3

    def test_no_discoveries(self):
        assert parse_discoveries("Made the change.") == []

    def test_conventions(self):
        output = '{"approved": true, "conventions": ["Use snake_case", " "]}'

        assert parse_conventions(output) == ["Use snake_case"]


class TestTaskExecutor:
    """Test TaskExecutor.execute."""

    def test_completes_on_first_attempt(self, task, phase, ctx):
        assistant = ScriptedAssistant()
        git = RecordingGit()

        result = make_executor(assistant, git).execute(task, phase, ctx)

        assert result.completed
        assert result.attempts == 1
        assert task.status == WorkStatus.COMPLETED
        assert task.verification.passed
        assert assistant.roles_called() == ["generate", "verify", "review"]
        assert git.commits == ["Task 1.1: Add the model"]
        assert result.commit == f"{1:040x}"

    def test_generate_fails_twice_then_succeeds(self, task, phase, ctx):
        """Test two failed Generate steps followed by a passing attempt."""
        assistant = ScriptedAssistant(
            {"generate": [AssistantError("timed out"), "", "Implemented the change."]}
        )
        git = RecordingGit()

        result = make_executor(assistant, git).execute(task, phase, ctx)

        assert result.completed
        assert task.attempt_count == 3
        assert task.status == WorkStatus.COMPLETED
        assert assistant.roles_called() == ["generate", "generate", "generate", "verify", "review"]
        assert len(git.commits) == 1

    def test_fails_after_max_attempts(self, task, phase, ctx):
        """Test the task fails after three rejected attempts."""
        assistant = ScriptedAssistant(review=REJECT)
        git = RecordingGit()

        result = make_executor(assistant, git).execute(task, phase, ctx)

        assert not result.completed
        assert task.attempt_count == 3
        assert task.status == WorkStatus.FAILED
        assert assistant.roles_called().count("generate") == 3
        assert "Handle the empty input case" in task.error_message
        assert git.commits == []

    def test_feedback_carried_into_next_generate(self, task, phase, ctx):
        assistant = ScriptedAssistant({"verify": [FAIL_VERIFY]})

        result = make_executor(assistant).execute(task, phase, ctx)

        assert result.completed
        prompts = assistant.prompts_for("generate")
        assert "Feedback From The Previous Attempt" not in prompts[0]
        assert "Feedback From The Previous Attempt" in prompts[1]
        assert "test_login fails" in prompts[1]
        assert "2 tests failed" in prompts[1]

    def test_failed_verify_skips_review(self, task, phase, ctx):
        assistant = ScriptedAssistant(verify=FAIL_VERIFY)

        make_executor(assistant, retry_strategy=RetryStrategy(RetryConfig(max_attempts=1))).execute(
            task, phase, ctx
        )

        assert assistant.roles_called() == ["generate", "verify"]
        assert task.verification.passed is False

    def test_unclear_verdict_is_failure(self, task, phase, ctx):
        assistant = ScriptedAssistant(verify="I ran some things.")

        result = make_executor(
            assistant, retry_strategy=RetryStrategy(RetryConfig(max_attempts=1))
        ).execute(task, phase, ctx)

        assert not result.completed

    def test_failing_check_command_fails_verify(self, task, phase, ctx):
        """Test a failing shell check overrides a passing verdict."""
        assistant = ScriptedAssistant()
        executor = make_executor(
            assistant,
            retry_strategy=RetryStrategy(RetryConfig(max_attempts=1)),
            verify_commands=[f'{sys.executable} -c "import sys; sys.exit(3)"'],
        )

        result = executor.execute(task, phase, ctx)

        assert not result.completed
        assert task.verification.checks[0].passed is False
        assert "[FAIL]" in task.error_message
        assert "[FAIL]" in assistant.prompts_for("verify")[0]

    def test_resumes_attempt_count(self, task, phase, ctx):
        """Test a resumed task only gets its remaining attempts."""
        task.attempt_count = 2
        assistant = ScriptedAssistant(review=REJECT)

        result = make_executor(assistant).execute(task, phase, ctx)

        assert not result.completed
        assert task.attempt_count == 3
        assert assistant.roles_called().count("generate") == 1

    def test_stop_before_first_attempt(self, task, phase, repo_dir):
        assistant = ScriptedAssistant()
        ctx = TaskContext("x", str(repo_dir), should_stop=lambda: True)

        result = make_executor(assistant).execute(task, phase, ctx)

        assert result.stopped
        assert not result.completed
        assert task.attempt_count == 0
        assert assistant.calls == []

    def test_stop_between_steps(self, task, phase, repo_dir):
        """Test a stop signal raised during Generate is seen before Verify."""
        stop = []
        assistant = ScriptedAssistant()
        assistant.on_call = lambda role, prompt: stop.append(role)
        ctx = TaskContext("x", str(repo_dir), should_stop=lambda: bool(stop))
        git = RecordingGit()

        result = make_executor(assistant, git).execute(task, phase, ctx)

        assert result.stopped
        assert assistant.roles_called() == ["generate"]
        assert task.status == WorkStatus.IN_PROGRESS
        assert git.commits == []

    def test_stop_during_review_skips_commit(self, task, phase, repo_dir):
        """Test an abort landing during Review leaves no task commit."""
        stop = []

        def abort_on_review(role, prompt):
            if role == "review":
                stop.append(role)

        assistant = ScriptedAssistant()
        assistant.on_call = abort_on_review
        ctx = TaskContext("x", str(repo_dir), should_stop=lambda: bool(stop))
        git = RecordingGit()

        result = make_executor(assistant, git).execute(task, phase, ctx)

        assert result.stopped
        assert not result.completed
        assert assistant.roles_called() == ["generate", "verify", "review"]
        assert task.status == WorkStatus.IN_PROGRESS
        assert git.commits == []

    def test_collects_discoveries_and_conventions(self, task, phase, ctx):
        assistant = ScriptedAssistant(
            {
                "generate": [
                    generate_output(
                        [{"subject": "layout", "fact": "Code in src", "citations": ["src/app.py"]}]
                    )
                ],
                "review": ['{"approved": true, "feedback": "ok", "conventions": ["Type hints everywhere"]}'],
            }
        )

        result = make_executor(assistant).execute(task, phase, ctx)

        assert [d.subject for d in result.discoveries] == ["layout"]
        assert result.conventions == ["Type hints everywhere"]

    def test_progress_reported(self, task, phase, repo_dir):
        messages = []
        ctx = TaskContext("x", str(repo_dir), on_progress=lambda m, data: messages.append((m, data)))

        make_executor(ScriptedAssistant()).execute(task, phase, ctx)

        assert messages[0][0] == "Task 1.1: attempt 1/3"
        assert messages[-1][1]["commit"] == f"{1:040x}"

    def test_commit_failure_propagates(self, task, phase, ctx):
        git = RecordingGit(fail_on_commit=GitOperationError("index locked"))

        with pytest.raises(GitOperationError):
            make_executor(ScriptedAssistant(), git).execute(task, phase, ctx)

    def test_sessions_returned_to_pool(self, task, phase, ctx):
        assistant = ScriptedAssistant()
        pool = SessionPool(assistant)

        TaskExecutor(pool, RecordingGit()).execute(task, phase, ctx)

        assert pool.idle_count() == 3


class TestChecks:
    """Test shell verification checks."""

    def test_passing_and_failing(self, tmp_path):
        ok = run_check(f'{sys.executable} -c "print(42)"', tmp_path, timeout=30)
        bad = run_check(f'{sys.executable} -c "import sys; sys.exit(1)"', tmp_path, timeout=30)

        assert ok.passed and "42" in ok.output
        assert not bad.passed

    def test_timeout_fails(self, tmp_path):
        check = run_check(f'{sys.executable} -c "import time; time.sleep(5)"', tmp_path, timeout=1)

        assert not check.passed
        assert check.output == "Timed out after 1s"

    def test_format(self, tmp_path):
        ok = run_check(f'{sys.executable} -c "pass"', tmp_path, timeout=30)

        assert format_check_results([ok]).startswith("- [PASS]")
        assert format_check_results([]) == ""
