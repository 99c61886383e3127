"""Generation-assistant collaborator and its session pool.

The core treats the assistant as an opaque text-in/text-out service. All
structure (plans, verdicts, discoveries) is encoded and decoded by the core.
The default client shells out to a CLI command with the prompt passed via
``-p``; any other transport can implement ``AssistantClient``.
"""

import subprocess
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from pydantic import BaseModel, Field

from .exceptions import AssistantError, AssistantTimeoutError

CHUNK_DELTA = "delta"
CHUNK_DONE = "done"


class SessionConfig(BaseModel):
    """Configuration for one assistant session."""

    working_dir: str = Field(default=".", description="Directory the assistant works in")
    model: Optional[str] = Field(default=None, description="Model override")
    system_prompt: Optional[str] = Field(default=None, description="Role instructions")

    def pool_key(self) -> str:
        return self.model_dump_json()


@dataclass
class AssistantChunk:
    """One piece of an incrementally delivered response."""

    type: str
    content: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AssistantClient(ABC):
    """Interface of the generation-assistant service."""

    @abstractmethod
    def create_session(self, config: SessionConfig) -> str:
        """Open a session and return its id."""

    @abstractmethod
    def send(self, session_id: str, prompt: str) -> str:
        """Send a prompt and return the full response text."""

    def stream(self, session_id: str, prompt: str) -> Iterator[AssistantChunk]:
        """Deliver a response as chunks terminated by a ``done`` marker."""
        yield AssistantChunk(type=CHUNK_DELTA, content=self.send(session_id, prompt))
        yield AssistantChunk(type=CHUNK_DONE)

    @abstractmethod
    def close(self, session_id: str) -> None:
        """Close a session."""


def collect_stream(chunks: Iterator[AssistantChunk]) -> str:
    """Join streamed chunks up to the completion marker."""
    parts: List[str] = []
    for chunk in chunks:
        if chunk.type == CHUNK_DONE:
            return "".join(parts)
        parts.append(chunk.content)
    raise AssistantError("Assistant stream ended without a completion marker")


class CliAssistant(AssistantClient):
    """Run an assistant CLI as a subprocess for every prompt."""

    def __init__(
        self,
        command: str = "claude --dangerously-skip-permissions",
        default_timeout: int = 1800,
    ):
        """Initialize the CLI assistant.

        Args:
            command: CLI command (e.g., "claude --dangerously-skip-permissions")
            default_timeout: Timeout in seconds per prompt
        """
        self.command = command
        self.default_timeout = default_timeout
        self._sessions: Dict[str, SessionConfig] = {}
        self._lock = threading.Lock()

    def create_session(self, config: SessionConfig) -> str:
        session_id = uuid.uuid4().hex
        with self._lock:
            self._sessions[session_id] = config
        return session_id

    def close(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def _session_config(self, session_id: str) -> SessionConfig:
        with self._lock:
            config = self._sessions.get(session_id)
        if config is None:
            raise AssistantError(f"Unknown assistant session: {session_id}")
        return config

    def _build_command(self, config: SessionConfig, prompt: str) -> List[str]:
        cmd = self.command.split()
        if config.model:
            cmd += ["--model", config.model]
        if config.system_prompt:
            prompt = f"{config.system_prompt}\n\n{prompt}"
        return cmd + ["-p", prompt]

    def send(self, session_id: str, prompt: str) -> str:
        """Run the CLI and return its stdout.

        Raises:
            AssistantTimeoutError: If the CLI exceeds the timeout
            AssistantError: If the CLI is missing or exits non-zero
        """
        config = self._session_config(session_id)
        cmd = self._build_command(config, prompt)
        start_time = time.time()

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(Path(config.working_dir)),
                text=True,
            )
            try:
                stdout, stderr = process.communicate(timeout=self.default_timeout)
            except subprocess.TimeoutExpired as e:
                process.kill()
                process.communicate()
                raise AssistantTimeoutError(
                    f"Assistant timed out after {self.default_timeout}s "
                    f"(session: {session_id})"
                ) from e
        except FileNotFoundError as e:
            raise AssistantError(
                f"Assistant CLI not found. Is it installed? Command: {self.command}"
            ) from e

        if process.returncode != 0:
            message = f"Assistant exited with code {process.returncode}"
            if stderr:
                message += f": {stderr[:500]}"
            message += f" after {time.time() - start_time:.1f}s"
            raise AssistantError(message)

        return stdout

    def stream(self, session_id: str, prompt: str) -> Iterator[AssistantChunk]:
        """Yield stdout line by line as it is produced."""
        config = self._session_config(session_id)
        cmd = self._build_command(config, prompt)

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(Path(config.working_dir)),
                text=True,
            )
        except FileNotFoundError as e:
            raise AssistantError(
                f"Assistant CLI not found. Is it installed? Command: {self.command}"
            ) from e

        assert process.stdout is not None
        for line in process.stdout:
            yield AssistantChunk(type=CHUNK_DELTA, content=line)

        try:
            process.wait(timeout=self.default_timeout)
        except subprocess.TimeoutExpired as e:
            process.kill()
            raise AssistantTimeoutError(
                f"Assistant timed out after {self.default_timeout}s (session: {session_id})"
            ) from e

        if process.returncode != 0:
            stderr = process.stderr.read() if process.stderr else ""
            raise AssistantError(
                f"Assistant exited with code {process.returncode}: {stderr[:500]}"
            )

        yield AssistantChunk(type=CHUNK_DONE)


class AssistantSession:
    """Handle to a pooled session; valid only inside ``SessionPool.session``."""

    def __init__(self, client: AssistantClient, session_id: str, config: SessionConfig):
        self.client = client
        self.session_id = session_id
        self.config = config

    def send(self, prompt: str) -> str:
        return self.client.send(self.session_id, prompt)

    def stream(self, prompt: str) -> Iterator[AssistantChunk]:
        return self.client.stream(self.session_id, prompt)


class SessionPool:
    """
    Managed lifecycle for assistant sessions.

    Sessions are created on demand, returned to an idle pool keyed by their
    configuration after use, and all closed on ``shutdown``.
    """

    def __init__(self, client: AssistantClient, max_idle_per_config: int = 2):
        self.client = client
        self.max_idle_per_config = max_idle_per_config
        self._idle: Dict[str, List[str]] = defaultdict(list)
        self._in_use: Dict[str, SessionConfig] = {}
        self._lock = threading.Lock()
        self._closed = False

    def acquire(self, config: SessionConfig) -> AssistantSession:
        with self._lock:
            if self._closed:
                raise AssistantError("Session pool has been shut down")
            idle = self._idle[config.pool_key()]
            session_id = idle.pop() if idle else None

        if session_id is None:
            session_id = self.client.create_session(config)

        with self._lock:
            self._in_use[session_id] = config
        return AssistantSession(self.client, session_id, config)

    def release(self, session: AssistantSession) -> None:
        close_now = False
        with self._lock:
            self._in_use.pop(session.session_id, None)
            idle = self._idle[session.config.pool_key()]
            if self._closed or len(idle) >= self.max_idle_per_config:
                close_now = True
            else:
                idle.append(session.session_id)

        if close_now:
            self.client.close(session.session_id)

    @contextmanager
    def session(self, config: SessionConfig) -> Iterator[AssistantSession]:
        """Borrow a session for the duration of the block."""
        handle = self.acquire(config)
        try:
            yield handle
        finally:
            self.release(handle)

    def idle_count(self) -> int:
        with self._lock:
            return sum(len(ids) for ids in self._idle.values())

    def shutdown(self) -> None:
        """Close every idle and in-use session; later acquires fail."""
        with self._lock:
            self._closed = True
            session_ids = [sid for ids in self._idle.values() for sid in ids]
            session_ids += list(self._in_use)
            self._idle.clear()
            self._in_use.clear()

        for session_id in session_ids:
            self.client.close(session_id)
