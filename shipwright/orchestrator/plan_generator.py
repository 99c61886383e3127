"""Turn free-form requirements into a phased implementation plan.

Parsing never raises for malformed assistant output: ``parse_plan`` returns
either ``PlanParsed`` or ``PlanParseError`` and a parse error feeds the
deterministic ``default_plan``. Transport failures (``AssistantError``) are
not parse failures and propagate to the caller.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from ..core.assistant import SessionConfig, SessionPool
from ..core.output_parser import OutputParser
from ..core.plan import ImplementationPhase, ImplementationPlan, PhaseTask
from ..core.prompt_loader import PromptLoader

logger = logging.getLogger(__name__)

PLANNER_ROLE = (
    "You are a senior software architect. You plan changes to an existing "
    "repository; you do not write code at this stage."
)
DEFAULT_PHASE_NAME = "Implementation"

# "Phase 2: Foundation" -> "Foundation"
_PHASE_PREFIX = re.compile(r"^\s*phase\s+\d+\s*[:.\-]\s*", re.IGNORECASE)


@dataclass
class PlanParsed:
    """Structured plan extracted from assistant output."""

    phases: List[ImplementationPhase]
    estimated_duration: Optional[str] = None


@dataclass
class PlanParseError:
    """Why assistant output could not be turned into a plan."""

    reason: str
    raw_excerpt: str = ""


PlanParseResult = Union[PlanParsed, PlanParseError]


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _build_phase(index: int, raw: Dict[str, Any]) -> ImplementationPhase:
    name = str(raw.get("name") or raw.get("title") or f"Phase {index}")
    name = _PHASE_PREFIX.sub("", name).strip() or f"Phase {index}"
    description = str(raw.get("description") or "")

    tasks: List[PhaseTask] = []
    seen_ids = set()
    for n, raw_task in enumerate(_as_list(raw.get("tasks")), start=1):
        if isinstance(raw_task, str):
            raw_task = {"description": raw_task}
        if not isinstance(raw_task, dict):
            raise ValueError(f"Task {n} of phase {index} is not an object")

        task_id = str(raw_task.get("id") or "").strip()
        if not task_id or task_id in seen_ids:
            task_id = f"{index}.{n}"
        seen_ids.add(task_id)

        tasks.append(
            PhaseTask(
                id=task_id,
                description=str(raw_task.get("description") or raw_task.get("title") or task_id),
                target_files=[str(f) for f in _as_list(raw_task.get("files") or raw_task.get("target_files"))],
                complexity=raw_task.get("complexity"),
            )
        )

    if not tasks:
        # A phase without tasks could never complete
        tasks.append(PhaseTask(id=f"{index}.1", description=description or name))

    criteria = raw.get("acceptance_criteria") or raw.get("acceptanceCriteria")
    return ImplementationPhase(
        index=index,
        name=name,
        description=description,
        tasks=tasks,
        acceptance_criteria=[str(c) for c in _as_list(criteria)],
    )


def parse_plan(output: str) -> PlanParseResult:
    """Extract a plan from assistant output.

    Takes the first balanced JSON object that decodes. Missing or empty
    ``phases`` is a parse error.

    Args:
        output: Raw assistant output

    Returns:
        PlanParsed on success, PlanParseError otherwise
    """
    excerpt = OutputParser.sanitize_output(output or "", max_length=200)
    data = OutputParser.first_json_object(output or "")
    if data is None:
        return PlanParseError("No JSON object found in assistant output", excerpt)

    raw_phases = data.get("phases")
    if not isinstance(raw_phases, list) or not raw_phases:
        return PlanParseError("Plan has no phases", excerpt)

    phases: List[ImplementationPhase] = []
    try:
        for index, raw_phase in enumerate(raw_phases, start=1):
            if not isinstance(raw_phase, dict):
                return PlanParseError(f"Phase {index} is not an object", excerpt)
            phases.append(_build_phase(index, raw_phase))
    except (ValueError, ValidationError) as e:
        return PlanParseError(f"Invalid plan structure: {e}", excerpt)

    duration = data.get("estimatedDuration") or data.get("estimated_duration")
    return PlanParsed(phases=phases, estimated_duration=str(duration) if duration else None)


def default_plan(requirements: str) -> PlanParsed:
    """The fallback plan: one phase with one task restating the requirements."""
    return PlanParsed(
        phases=[
            ImplementationPhase(
                index=1,
                name=DEFAULT_PHASE_NAME,
                description="Implement the requested changes",
                tasks=[PhaseTask(id="1.1", description=requirements.strip())],
            )
        ]
    )


class PlanGenerator:
    """Asks the assistant for a plan and turns the reply into an ImplementationPlan."""

    def __init__(
        self,
        session_pool: SessionPool,
        prompt_loader: Optional[PromptLoader] = None,
        model: Optional[str] = None,
    ):
        """Initialize the plan generator.

        Args:
            session_pool: Pool of assistant sessions
            prompt_loader: Template loader (default: packaged templates)
            model: Model override for the planning session
        """
        self.session_pool = session_pool
        self.prompt_loader = prompt_loader or PromptLoader()
        self.model = model

    def build_prompt(self, requirements: str, context: Optional[str] = None) -> str:
        return self.prompt_loader.render_template(
            "planning", {"requirements": requirements.strip(), "context": context or ""}
        )

    def generate(
        self,
        requirements: str,
        repository_path: str,
        context: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> ImplementationPlan:
        """Generate a plan for ``requirements``.

        Args:
            requirements: Free-text requirements
            repository_path: Repository the plan is for
            context: Optional prose (e.g. verified memories) for the prompt
            workflow_id: Owning workflow

        Returns:
            Plan with every phase and task in ``not_started``

        Raises:
            AssistantError: If the assistant could not be reached
        """
        prompt = self.build_prompt(requirements, context)
        config = SessionConfig(
            working_dir=repository_path, model=self.model, system_prompt=PLANNER_ROLE
        )
        with self.session_pool.session(config) as session:
            output = session.send(prompt)

        result = parse_plan(output)
        if isinstance(result, PlanParseError):
            logger.warning("Falling back to default plan: %s", result.reason)
            result = default_plan(requirements)

        return ImplementationPlan(
            id=uuid.uuid4().hex[:12],
            workflow_id=workflow_id,
            repository_path=repository_path,
            phases=result.phases,
            estimated_duration=result.estimated_duration,
        )
