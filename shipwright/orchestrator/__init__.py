"""Orchestration layer: plans, phases, tasks and the workflow lifecycle.

This package turns requirements into a phased plan, drives every task through
generate/verify/review attempts with checkpoint commits, and exposes the
workflow control surface (start, abort, retry, skip, event streams).
"""

from .controller import OrchestrationController
from .events import EventBroadcaster, EventSubscription
from .phase_runner import MarkdownGuidanceWriter, PhaseResult, PhaseRunner
from .plan_generator import PlanGenerator, PlanParsed, PlanParseError, default_plan, parse_plan
from .registry import WorkflowRegistry
from .retry_strategy import RetryConfig, RetryDecision, RetryStrategy
from .task_executor import TaskContext, TaskExecutionResult, TaskExecutor

__all__ = [
    "OrchestrationController",
    "EventBroadcaster",
    "EventSubscription",
    "MarkdownGuidanceWriter",
    "PhaseResult",
    "PhaseRunner",
    "PlanGenerator",
    "PlanParsed",
    "PlanParseError",
    "default_plan",
    "parse_plan",
    "WorkflowRegistry",
    "RetryConfig",
    "RetryDecision",
    "RetryStrategy",
    "TaskContext",
    "TaskExecutionResult",
    "TaskExecutor",
]
