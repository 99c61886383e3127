"""Retry strategy for task attempts.

A task gets a fixed number of attempts. A failing Generate, Verify or
Review step uses one attempt and its feedback is carried into the next
Generate prompt. There is no automatic retry beyond the bound.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

DEFAULT_MAX_ATTEMPTS = 3


class RetryDecision(Enum):
    """Decision on what to do after an attempt."""

    RETRY = "retry"  # Run another attempt
    FAIL = "fail"  # Mark task as failed
    COMPLETE = "complete"  # All steps passed


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    """Attempts per task, including the first"""

    def __post_init__(self) -> None:
        if not 1 <= self.max_attempts <= 10:
            raise ValueError("max_attempts must be between 1 and 10")


class RetryStrategy:
    """Determines what happens after each task attempt."""

    def __init__(self, config: Optional[RetryConfig] = None):
        """Initialize retry strategy.

        Args:
            config: Retry configuration (uses defaults if None)
        """
        self.config = config or RetryConfig()

    @property
    def max_attempts(self) -> int:
        return self.config.max_attempts

    def decide(self, attempts_made: int, passed: bool) -> RetryDecision:
        """Decide the next move after an attempt.

        Args:
            attempts_made: Attempts used so far, including this one
            passed: Whether every step of this attempt passed

        Returns:
            RetryDecision indicating what action to take
        """
        if passed:
            return RetryDecision.COMPLETE

        if attempts_made >= self.config.max_attempts:
            return RetryDecision.FAIL

        return RetryDecision.RETRY

    def get_retry_message(
        self,
        decision: RetryDecision,
        attempts_made: int,
        reason: Optional[str] = None,
    ) -> str:
        """Get a human-readable message about the retry decision."""
        if decision == RetryDecision.RETRY:
            msg = f"Retrying task (attempt {attempts_made + 1}/{self.config.max_attempts})"
        elif decision == RetryDecision.FAIL:
            msg = f"Task failed after {attempts_made} attempts"
        elif attempts_made > 1:
            msg = f"Task completed after {attempts_made} attempts"
        else:
            msg = "Task completed successfully"

        if reason:
            msg += f": {reason}"
        return msg
