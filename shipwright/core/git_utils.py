"""Git collaborator for checkpoint commits."""

import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

from .exceptions import GitOperationError


class GitRepository:
    """
    Thin wrapper around the git primitives the workflow needs.

    Provides stage, commit, push, branch creation and checkout. The
    orchestration core performs no merge or diff logic of its own.
    """

    def __init__(self, repo_path: Optional[Path] = None, remote: str = "origin"):
        """
        Initialize the git collaborator.

        Args:
            repo_path: Path to git repository (default: current directory)
            remote: Remote used for pushes
        """
        self.repo_path = Path(repo_path) if repo_path else Path.cwd()
        self.remote = remote

        if not self.is_git_repo():
            raise GitOperationError(f"Not a git repository: {self.repo_path}")

    def _run_git(self, *args: str, check: bool = True) -> Tuple[int, str, str]:
        """
        Run a git command.

        Args:
            args: Git command arguments
            check: Raise error on non-zero exit

        Returns:
            Tuple of (returncode, stdout, stderr)

        Raises:
            GitOperationError: If command fails and check=True
        """
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as e:
            raise GitOperationError("Git command not found") from e
        except OSError as e:
            raise GitOperationError(f"Git operation failed: {e}") from e

        if check and result.returncode != 0:
            raise GitOperationError(
                f"Git command failed: git {' '.join(args)}\n"
                f"Error: {result.stderr}"
            )

        return result.returncode, result.stdout, result.stderr

    def is_git_repo(self) -> bool:
        """Check if the path is inside a git repository."""
        if not self.repo_path.is_dir():
            return False
        returncode, _, _ = self._run_git("rev-parse", "--git-dir", check=False)
        return returncode == 0

    def get_current_branch(self) -> str:
        """
        Get the name of the current branch.

        Raises:
            GitOperationError: If not on a branch
        """
        _, stdout, _ = self._run_git("rev-parse", "--abbrev-ref", "HEAD")
        branch = stdout.strip()

        if branch == "HEAD":
            raise GitOperationError("Not currently on a branch (detached HEAD)")

        return branch

    def get_current_commit(self) -> str:
        """Get the current commit hash."""
        _, stdout, _ = self._run_git("rev-parse", "HEAD")
        return stdout.strip()

    def has_uncommitted_changes(self) -> bool:
        """Check if there are uncommitted changes."""
        _, stdout, _ = self._run_git("status", "--porcelain")
        return bool(stdout.strip())

    def has_remote(self) -> bool:
        """Check whether the configured push remote exists."""
        _, stdout, _ = self._run_git("remote")
        return self.remote in stdout.split()

    def stage(self, pathspec: str = ".") -> None:
        """
        Stage changes matching a pathspec.

        The ``.shipwright`` state directory is never staged.
        """
        self._run_git("add", "-A", "--", pathspec, ":(exclude).shipwright")

    def commit(self, message: str, allow_empty: bool = True) -> str:
        """
        Commit staged changes.

        Args:
            message: Commit message
            allow_empty: Record the checkpoint even when nothing changed

        Returns:
            Commit hash
        """
        args = ["commit", "-m", message]
        if allow_empty:
            args.append("--allow-empty")

        self._run_git(*args)
        return self.get_current_commit()

    def push(self, branch: Optional[str] = None) -> bool:
        """
        Push a branch to the configured remote.

        Returns:
            True if a push happened, False when no remote is configured
        """
        if not self.has_remote():
            return False

        branch = branch or self.get_current_branch()
        self._run_git("push", "--set-upstream", self.remote, branch)
        return True

    def create_branch(self, name: str, base: Optional[str] = None) -> None:
        """Create and switch to a new branch, optionally from ``base``."""
        args = ["checkout", "-b", name]
        if base:
            args.append(base)
        self._run_git(*args)

    def checkout(self, name: str) -> None:
        """Checkout an existing branch or reference."""
        self._run_git("checkout", name)

    def branch_exists(self, name: str) -> bool:
        returncode, _, _ = self._run_git(
            "rev-parse", "--verify", "--quiet", f"refs/heads/{name}", check=False
        )
        return returncode == 0

    def get_changed_files(self) -> List[str]:
        """List paths with uncommitted changes."""
        _, stdout, _ = self._run_git("status", "--porcelain")
        return [line[3:] for line in stdout.splitlines() if line]
