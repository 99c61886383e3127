"""Configuration models for Shipwright."""

import re
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

DURATION_PATTERN = re.compile(r"^(\d+)([hms])$")
DURATION_UNITS = {"h": 3600, "m": 60, "s": 1}


def parse_duration(value: str) -> int:
    """Convert a duration like '30m', '2h' or '300s' into seconds."""
    match = DURATION_PATTERN.match(value)
    if not match:
        raise ValueError("Duration must be in format like '30m', '2h', or '300s'")
    return int(match.group(1)) * DURATION_UNITS[match.group(2)]


class AssistantConfig(BaseModel):
    """Generation assistant configuration."""

    command: str = Field(
        default="claude --dangerously-skip-permissions", description="Assistant CLI command"
    )
    model: Optional[str] = Field(default=None, description="Model override")
    timeout: str = Field(default="30m", description="Timeout per prompt")
    max_idle_sessions: int = Field(default=2, description="Idle sessions kept per configuration")

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: str) -> str:
        """Validate timeout format."""
        parse_duration(v)
        return v

    @field_validator("max_idle_sessions")
    @classmethod
    def validate_idle_sessions(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_idle_sessions cannot be negative")
        return v

    def timeout_seconds(self) -> int:
        return parse_duration(self.timeout)


class ExecutionConfig(BaseModel):
    """Task and workflow execution limits."""

    max_attempts: int = Field(default=3, description="Attempts per task before it fails")
    max_iterations: int = Field(default=50, description="Task dispatches per workflow")
    verify_commands: List[str] = Field(
        default_factory=list, description="Shell checks run during the Verify step"
    )
    check_timeout: str = Field(default="10m", description="Timeout per verify command")

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        """Validate attempt bound."""
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        if v > 10:
            raise ValueError("max_attempts cannot exceed 10")
        return v

    @field_validator("max_iterations")
    @classmethod
    def validate_max_iterations(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_iterations must be at least 1")
        return v

    @field_validator("check_timeout")
    @classmethod
    def validate_check_timeout(cls, v: str) -> str:
        parse_duration(v)
        return v

    def check_timeout_seconds(self) -> int:
        return parse_duration(self.check_timeout)


class MemoryConfig(BaseModel):
    """Memory subsystem configuration."""

    enabled: bool = Field(default=True, description="Use memories in prompts")
    max_memories_per_prompt: int = Field(default=10, description="Memories per prompt")
    verify_before_use: bool = Field(default=True, description="Validate before prompting")
    auto_store_discoveries: bool = Field(default=True, description="Store reported facts")
    minimum_confidence: float = Field(default=0.5, description="Confidence needed to use")
    prune_interval: str = Field(default="1h", description="Background prune interval")
    validation_workers: int = Field(default=8, description="Threads for citation checks")

    @field_validator("max_memories_per_prompt", "validation_workers")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate positive integers."""
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator("minimum_confidence")
    @classmethod
    def validate_confidence(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("minimum_confidence must be between 0 and 1")
        return v

    @field_validator("prune_interval")
    @classmethod
    def validate_interval(cls, v: str) -> str:
        parse_duration(v)
        return v

    def prune_interval_seconds(self) -> int:
        return parse_duration(self.prune_interval)


class GitConfig(BaseModel):
    """Git configuration."""

    create_branch: bool = Field(default=True, description="Work on a new branch per workflow")
    branch_prefix: str = Field(default="shipwright/", description="Branch prefix")
    push_on_phase_complete: bool = Field(default=True, description="Push after phase commits")
    remote: str = Field(default="origin", description="Remote to push to")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format")
    output_dir: str = Field(default=".shipwright/logs", description="Log output directory")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR"]
        level = "WARNING" if v.upper() == "WARN" else v.upper()
        if level not in valid_levels:
            raise ValueError(f"level must be one of: {', '.join(valid_levels)}")
        return level

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = ["json", "text"]
        if v not in valid_formats:
            raise ValueError(f"format must be one of: {', '.join(valid_formats)}")
        return v


class ServerConfig(BaseModel):
    """Web API configuration."""

    host: str = Field(default="127.0.0.1", description="Bind host")
    port: int = Field(default=8000, description="Bind port")

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError("port must be between 1 and 65535")
        return v


class ShipwrightConfig(BaseModel):
    """Main Shipwright configuration."""

    state_dir: str = Field(default=".shipwright", description="Plans, workflows, memories")
    assistant: AssistantConfig = Field(default_factory=AssistantConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    def get_state_dir(self) -> Path:
        return Path(self.state_dir).expanduser().resolve()

    def get_log_dir(self) -> Path:
        """Get the log directory as a Path object."""
        return Path(self.logging.output_dir).expanduser().resolve()

