# planrunner/generator.py
"""
Plan generator - turns a prompt or a template into a Plan.

Prompts are classified into a coarse archetype by keyword, and each
archetype contributes a fixed pair of steps to a linear chain:

    Analyze requirements -> <archetype steps> -> [tests] -> [docs] -> Review changes

Every step after the first depends on exactly the step before it.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import TemplateNotFoundError
from .plan import Plan, PlanStatus, Step, StepStatus, StepType, generate_id
from .templates import PlanTemplate, default_templates, load_template_dir

logger = logging.getLogger(__name__)


class Archetype(Enum):
    """Coarse classification of a prompt."""
    BUG_FIX = "bug-fix"
    REFACTOR = "refactor"
    NEW_FEATURE = "new-feature"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    GENERIC = "generic"


# Checked in order; the first archetype with a matching keyword wins
ARCHETYPE_KEYWORDS = [
    (Archetype.BUG_FIX, ("bug", "fix", "error")),
    (Archetype.REFACTOR, ("refactor", "clean up", "improve")),
    (Archetype.NEW_FEATURE, ("add", "create", "implement", "new")),
    (Archetype.TESTING, ("test",)),
    (Archetype.DOCUMENTATION, ("document", "readme")),
]

# (title, description, type, complexity) for the two archetype-specific steps
_DESIGN_STEPS = [
    ("Design solution", "Design the implementation approach", StepType.ANALYSIS, 3),
    ("Create/modify files", "Create new files or modify existing ones", StepType.CODE_GENERATION, 4),
]

ARCHETYPE_STEPS = {
    Archetype.BUG_FIX: [
        ("Identify root cause", "Locate the source of the bug in the codebase", StepType.ANALYSIS, 3),
        ("Implement fix", "Apply the necessary code changes to fix the bug", StepType.FILE_MODIFY, 3),
    ],
    Archetype.REFACTOR: [
        ("Plan refactoring", "Design the refactoring approach and identify affected code", StepType.ANALYSIS, 3),
        ("Apply refactoring", "Execute the refactoring changes", StepType.REFACTOR, 4),
    ],
    Archetype.NEW_FEATURE: _DESIGN_STEPS,
    Archetype.TESTING: _DESIGN_STEPS,
    Archetype.DOCUMENTATION: _DESIGN_STEPS,
    Archetype.GENERIC: _DESIGN_STEPS,
}

TAG_KEYWORDS = [
    "typescript", "javascript", "python", "react", "angular", "vue",
    "api", "database", "frontend", "backend", "test", "documentation",
    "bug", "feature", "refactor", "performance", "security",
]

COMPLEXITY_LEVELS = ("simple", "balanced", "thorough")

MAX_TITLE_LENGTH = 60


@dataclass
class GenerationOptions:
    """
    Options for plan generation.

    Attributes:
        max_steps: Maximum number of steps (extra steps are dropped from the end)
        include_tests: Add an "Add/update tests" step
        include_docs: Add an "Update documentation" step
        complexity: simple, balanced or thorough
        context_files: Files the plan should consider
    """
    max_steps: int = 10
    include_tests: bool = True
    include_docs: bool = False
    complexity: str = "balanced"
    context_files: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.complexity not in COMPLEXITY_LEVELS:
            raise ValueError(
                f"complexity must be one of {', '.join(COMPLEXITY_LEVELS)}, got {self.complexity!r}"
            )
        if self.max_steps < 1:
            raise ValueError(f"max_steps must be positive, got {self.max_steps}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerationOptions":
        return cls(
            max_steps=data.get("max_steps", 10),
            include_tests=data.get("include_tests", True),
            include_docs=data.get("include_docs", False),
            complexity=data.get("complexity", "balanced"),
            context_files=list(data.get("context_files", [])),
        )


def classify_prompt(prompt: str) -> Archetype:
    """Classify a prompt into an archetype by keyword match."""
    prompt_lower = prompt.lower()
    for archetype, keywords in ARCHETYPE_KEYWORDS:
        if any(keyword in prompt_lower for keyword in keywords):
            return archetype
    return Archetype.GENERIC


def extract_title(prompt: str) -> str:
    """Use the first line, or the first sentence if the line is long."""
    first_line = prompt.split("\n")[0]
    first_sentence = re.split(r"[.!?]", prompt)[0]

    title = first_line if len(first_line) < MAX_TITLE_LENGTH else first_sentence
    if len(title) > MAX_TITLE_LENGTH:
        return title[:MAX_TITLE_LENGTH - 3] + "..."

    return title.strip() or "Execution Plan"


def extract_tags(prompt: str) -> List[str]:
    """Pick known technology/topic keywords out of the prompt."""
    prompt_lower = prompt.lower()
    return [keyword for keyword in TAG_KEYWORDS if keyword in prompt_lower]


def interpolate(template: str, variables: Dict[str, str]) -> str:
    """Replace {{name}} and ${name} placeholders."""
    result = template
    for key, value in variables.items():
        result = result.replace("{{" + key + "}}", str(value))
        result = result.replace("${" + key + "}", str(value))
    return result


class PlanGenerator:
    """
    Generates plans from prompts and templates.

    The generator has no side effects; apart from the random IDs, the
    same prompt and options always produce the same plan.
    """

    def __init__(self, templates: Optional[List[PlanTemplate]] = None):
        """
        Initialize the generator.

        Args:
            templates: Template catalog (defaults to the built-in templates)
        """
        self._templates: List[PlanTemplate] = (
            list(templates) if templates is not None else default_templates()
        )

    def generate_plan(self, prompt: str, options: Optional[GenerationOptions] = None) -> Plan:
        """
        Generate a plan from a free-text prompt.

        Args:
            prompt: The user's goal
            options: Generation options (defaults apply when omitted)

        Returns:
            A Draft plan whose steps form a linear chain
        """
        opts = options or GenerationOptions()
        archetype = classify_prompt(prompt)
        steps = self._build_steps(prompt, archetype, opts)

        metadata: Dict[str, Any] = {
            "archetype": archetype.value,
            "complexity": opts.complexity,
        }
        if opts.context_files:
            metadata["context_files"] = list(opts.context_files)

        plan = Plan(
            id=generate_id("plan"),
            title=extract_title(prompt),
            description=prompt,
            prompt=prompt,
            steps=steps,
            status=PlanStatus.DRAFT,
            tags=extract_tags(prompt),
            metadata=metadata,
        )

        logger.info(f"Generated {archetype.value} plan {plan.id} with {len(steps)} steps")
        return plan

    def _build_steps(self, prompt: str, archetype: Archetype, opts: GenerationOptions) -> List[Step]:
        steps: List[Step] = []

        def add(title: str, description: str, step_type: StepType, complexity: int):
            deps = [steps[-1].id] if steps else []
            steps.append(Step(
                id=generate_id("step"),
                number=len(steps) + 1,
                title=title,
                description=description,
                step_type=step_type,
                status=StepStatus.PENDING,
                dependencies=deps,
                complexity=complexity,
                affected_files=list(opts.context_files),
            ))

        summary = prompt[:100] + ("..." if len(prompt) > 100 else "")
        add("Analyze requirements", f'Analyze the request: "{summary}"', StepType.ANALYSIS, 2)

        for title, description, step_type, complexity in ARCHETYPE_STEPS[archetype]:
            add(title, description, step_type, complexity)

        if opts.include_tests:
            add("Add/update tests", "Write or update tests to verify the changes", StepType.TEST, 3)

        if opts.include_docs:
            add("Update documentation", "Document the changes made", StepType.DOCUMENTATION, 2)

        add("Review changes", "Review all changes and ensure quality", StepType.REVIEW, 2)

        if len(steps) > opts.max_steps:
            logger.debug(f"Truncating plan from {len(steps)} to {opts.max_steps} steps")
            steps = steps[:opts.max_steps]

        return steps

    def from_template(self, template_id: str, variables: Optional[Dict[str, str]] = None) -> Plan:
        """
        Instantiate a plan from a named template.

        Args:
            template_id: ID of a template in the catalog
            variables: Values for {{name}} placeholders

        Returns:
            A Ready plan

        Raises:
            TemplateNotFoundError: If no template has this ID
        """
        template = self.get_template(template_id)
        variables = variables or {}

        missing = [v for v in template.variables if v not in variables]
        if missing:
            logger.debug(f"Template {template_id} instantiated without: {', '.join(missing)}")

        steps = [
            Step(
                id=generate_id("step"),
                number=index + 1,
                title=interpolate(t.title, variables),
                description=interpolate(t.description, variables),
                step_type=t.step_type,
                status=StepStatus.PENDING,
                complexity=t.complexity,
            )
            for index, t in enumerate(template.steps)
        ]

        # Template dependencies are step numbers; undeclared ones chain linearly
        id_by_number = {t.number: step.id for t, step in zip(template.steps, steps)}
        for index, (t, step) in enumerate(zip(template.steps, steps)):
            if t.dependencies:
                step.dependencies = [id_by_number[n] for n in t.dependencies if n in id_by_number]
            elif index > 0:
                step.dependencies = [steps[index - 1].id]

        plan = Plan(
            id=generate_id("plan"),
            title=interpolate(template.name, variables),
            description=interpolate(template.description, variables),
            prompt=f"Template: {template.name}",
            steps=steps,
            status=PlanStatus.READY,
            tags=[template.category],
            metadata={"template": template.id, "variables": dict(variables)},
        )

        logger.info(f"Instantiated template {template_id} as plan {plan.id}")
        return plan

    def get_template(self, template_id: str) -> PlanTemplate:
        for template in self._templates:
            if template.id == template_id:
                return template
        raise TemplateNotFoundError(template_id)

    def get_templates(self) -> List[PlanTemplate]:
        """Return a copy of the template catalog."""
        return list(self._templates)

    def register_template(self, template: PlanTemplate) -> None:
        """Add a template, replacing any existing one with the same ID."""
        for index, existing in enumerate(self._templates):
            if existing.id == template.id:
                logger.warning(f"Overwriting template {template.id}")
                self._templates[index] = template
                return
        self._templates.append(template)

    def load_templates(self, directory: Path | str) -> int:
        """Register every template found in a directory. Returns the count."""
        templates = load_template_dir(directory)
        for template in templates:
            self.register_template(template)
        return len(templates)
