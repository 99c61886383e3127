"""Shared pytest fixtures and utilities for Shipwright tests."""

import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Generator

import pytest

from shipwright.config.models import ShipwrightConfig
from shipwright.core.assistant import SessionPool
from shipwright.core.state_persistence import PlanStorage, WorkflowStatePersistence
from shipwright.memory.service import MemoryService
from shipwright.orchestrator.controller import OrchestrationController
from shipwright.orchestrator.registry import WorkflowRegistry
from shipwright.tests.mocks import RecordingGit, ScriptedAssistant


# ============================================================================
# Directory and Repository Fixtures
# ============================================================================


@pytest.fixture
def git_repo(tmp_path: Path) -> Generator[Path, None, None]:
    """Create a temporary git repository for testing.

    The repository is initialized with:
    - Git config (user.name and user.email)
    - Initial commit with README.md

    Yields:
        Path to the git repository
    """
    repo_path = tmp_path / "test_repo"
    repo_path.mkdir(parents=True, exist_ok=True)

    def git(*args: str) -> None:
        subprocess.run(["git", *args], cwd=repo_path, check=True, capture_output=True)

    git("init")
    git("config", "user.name", "Test User")
    git("config", "user.email", "test@example.com")

    (repo_path / "README.md").write_text("# Test Repository\n\nGenerated for testing.\n")
    git("add", ".")
    git("commit", "-m", "Initial commit")

    yield repo_path


@pytest.fixture
def repo_dir(tmp_path: Path) -> Path:
    """Plain directory standing in for a repository when git is faked."""
    path = tmp_path / "repo"
    path.mkdir()
    return path


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / ".shipwright"


# ============================================================================
# Collaborator Fixtures
# ============================================================================


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def assistant() -> ScriptedAssistant:
    return ScriptedAssistant()


@pytest.fixture
def session_pool(assistant: ScriptedAssistant) -> SessionPool:
    return SessionPool(assistant)


@pytest.fixture
def recording_git() -> RecordingGit:
    return RecordingGit()


@pytest.fixture
def config(tmp_path: Path, state_dir: Path) -> ShipwrightConfig:
    """Configuration that keeps every file under tmp_path."""
    return ShipwrightConfig(
        state_dir=str(state_dir),
        logging={"output_dir": str(tmp_path / "logs")},
    )


@pytest.fixture
def memory_service() -> MemoryService:
    return MemoryService()


@pytest.fixture
def make_controller(
    session_pool: SessionPool,
    config: ShipwrightConfig,
    memory_service: MemoryService,
    recording_git: RecordingGit,
    state_dir: Path,
) -> Generator[Callable[..., OrchestrationController], None, None]:
    """Factory for controllers wired to the scripted assistant and recording git."""
    controllers = []

    def factory(**overrides) -> OrchestrationController:
        kwargs = dict(
            session_pool=session_pool,
            config=config,
            memory_service=memory_service,
            git_factory=lambda path: recording_git,
            registry=WorkflowRegistry(
                WorkflowStatePersistence(state_dir), PlanStorage(state_dir)
            ),
            state_dir=state_dir,
        )
        kwargs.update(overrides)
        controller = OrchestrationController(**kwargs)
        controllers.append(controller)
        return controller

    yield factory

    for controller in controllers:
        controller.shutdown(timeout=2.0)
