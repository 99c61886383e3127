"""Deterministic fakes for the assistant and version-control collaborators."""

from .fakes import (
    APPROVE,
    FAIL_VERIFY,
    PASS_VERIFY,
    REJECT,
    RecordingGit,
    ScriptedAssistant,
    generate_output,
    plan_output,
)

__all__ = [
    "APPROVE",
    "FAIL_VERIFY",
    "PASS_VERIFY",
    "REJECT",
    "RecordingGit",
    "ScriptedAssistant",
    "generate_output",
    "plan_output",
]
