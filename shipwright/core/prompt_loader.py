"""Prompt template loader with variable substitution.

Templates live as markdown files in ``shipwright/prompts/`` (one per role:
planning, generate, verify, review). Placeholders are ``{identifier}``;
placeholders ending in ``_section`` are optional blocks that disappear when
their data variable is empty.
"""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .exceptions import ConfigurationError

PLACEHOLDER = re.compile(r"\{([a-z_]+)\}")


class PromptLoadError(ConfigurationError):
    """Raised when prompt template cannot be loaded."""

    pass


class PromptRenderError(ConfigurationError):
    """Raised when prompt template cannot be rendered."""

    pass


class PromptTemplate(BaseModel):
    """Represents a loaded prompt template."""

    name: str = Field(description="Template name (e.g., 'planning', 'review')")
    content: str = Field(description="Raw template content")
    required_variables: List[str] = Field(default_factory=list)
    optional_variables: List[str] = Field(default_factory=list)

    def render(self, variables: Dict[str, Any]) -> str:
        """Render the template with provided variables.

        Args:
            variables: Dictionary of variable names to values

        Returns:
            Rendered template string

        Raises:
            PromptRenderError: If required variables are missing
        """
        missing = set(self.required_variables) - set(variables.keys())
        if missing:
            raise PromptRenderError(
                f"Missing required variables for template '{self.name}': {sorted(missing)}"
            )

        all_vars = dict(variables)
        for opt_var in self.optional_variables:
            data_var = opt_var[: -len("_section")]
            value = variables.get(data_var)
            all_vars[opt_var] = format_section(data_var, value) if value else ""

        def replace_var(match):
            value = all_vars.get(match.group(1))
            return str(value) if value is not None else ""

        return PLACEHOLDER.sub(replace_var, self.content)


def format_section(section_name: str, value: Any) -> str:
    """Format an optional section based on its name and type.

    Args:
        section_name: Name of the section (e.g., 'context', 'target_files')
        value: Value to format

    Returns:
        Formatted section content
    """
    if section_name == "context":
        return f"\n## Repository Knowledge\n\n{value}\n"

    if section_name == "feedback":
        return (
            "\n## Feedback From The Previous Attempt\n\n"
            f"The previous attempt was rejected. Address this first:\n\n{value}\n"
        )

    if isinstance(value, (list, tuple)):
        items = "\n".join(f"- {item}" for item in value)
        return f"\n## {section_name.replace('_', ' ').title()}\n\n{items}\n"

    return f"\n## {section_name.replace('_', ' ').title()}\n\n{value}\n"


class PromptLoader:
    """Loads and caches prompt templates."""

    def __init__(self, prompts_dir: Optional[Path] = None):
        """Initialize the prompt loader.

        Args:
            prompts_dir: Directory containing prompt templates.
                        Defaults to the ``prompts`` directory of the package.
        """
        if prompts_dir is None:
            prompts_dir = Path(__file__).parent.parent / "prompts"

        self.prompts_dir = Path(prompts_dir)
        if not self.prompts_dir.exists():
            raise PromptLoadError(f"Prompts directory not found: {self.prompts_dir}")

        self._templates: Dict[str, PromptTemplate] = {}

    def load_template(self, name: str) -> PromptTemplate:
        """Load a prompt template by name.

        Raises:
            PromptLoadError: If template file not found or unreadable
        """
        if name in self._templates:
            return self._templates[name]

        template_file = self.prompts_dir / f"{name}.md"
        if not template_file.exists():
            raise PromptLoadError(f"Template file not found: {template_file}")

        try:
            content = template_file.read_text(encoding="utf-8")
        except OSError as e:
            raise PromptLoadError(f"Failed to read template '{name}': {e}") from e

        variables = set(PLACEHOLDER.findall(content))
        template = PromptTemplate(
            name=name,
            content=content,
            required_variables=sorted(v for v in variables if not v.endswith("_section")),
            optional_variables=sorted(v for v in variables if v.endswith("_section")),
        )

        self._templates[name] = template
        return template

    def render_template(self, name: str, variables: Dict[str, Any]) -> str:
        """Load and render a template in one step."""
        return self.load_template(name).render(variables)

    def list_templates(self) -> List[str]:
        """List available template names."""
        return sorted(p.stem for p in self.prompts_dir.glob("*.md"))
