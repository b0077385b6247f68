# planrunner/templates.py
"""
Plan templates for common tasks.

Templates are written in YAML:

    id: bug-fix
    name: Bug Fix
    description: Fix a bug in the codebase
    category: Maintenance
    variables: [bugDescription, affectedFile]
    steps:
      - title: Reproduce bug
        description: Understand and reproduce the issue
        type: analysis
        complexity: 2

Titles and descriptions may contain {{variable}} or ${variable}
placeholders which are filled in when a plan is instantiated.
Step dependencies refer to template step numbers; a step without
dependencies follows the step before it.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml

from .plan import StepType

logger = logging.getLogger(__name__)


@dataclass
class TemplateStep:
    """A step blueprint inside a template."""
    number: int
    title: str
    description: str
    step_type: StepType
    complexity: int
    dependencies: List[int] = field(default_factory=list)

    def __post_init__(self):
        if not 1 <= self.complexity <= 5:
            raise ValueError(
                f"Template step {self.number} complexity must be 1-5, got {self.complexity}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "title": self.title,
            "description": self.description,
            "type": self.step_type.value,
            "complexity": self.complexity,
            "dependencies": list(self.dependencies),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], number: int) -> "TemplateStep":
        return cls(
            number=data.get("number", number),
            title=data["title"],
            description=data.get("description", ""),
            step_type=StepType(data.get("type", StepType.CUSTOM.value)),
            complexity=data.get("complexity", 1),
            dependencies=list(data.get("dependencies", [])),
        )


@dataclass
class PlanTemplate:
    """A reusable plan blueprint."""
    id: str
    name: str
    description: str
    category: str
    steps: List[TemplateStep]
    variables: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "steps": [s.to_dict() for s in self.steps],
            "variables": list(self.variables),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlanTemplate":
        if "id" not in data:
            raise ValueError("Template is missing an 'id'")
        steps = [
            TemplateStep.from_dict(step_data, number=index + 1)
            for index, step_data in enumerate(data.get("steps", []))
        ]
        if not steps:
            raise ValueError(f"Template {data['id']} has no steps")
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            description=data.get("description", ""),
            category=data.get("category", "General"),
            steps=steps,
            variables=list(data.get("variables", [])),
        )

    @classmethod
    def from_yaml(cls, yaml_content: str) -> "PlanTemplate":
        """Parse a single template from YAML."""
        return cls.from_dict(yaml.safe_load(yaml_content))

    @classmethod
    def from_file(cls, path: Path | str) -> "PlanTemplate":
        """Load a template from a YAML file."""
        with open(path, "r") as f:
            return cls.from_yaml(f.read())


def load_template_catalog(yaml_content: str) -> List[PlanTemplate]:
    """Parse a YAML document holding a list under 'templates'."""
    data = yaml.safe_load(yaml_content) or {}
    return [PlanTemplate.from_dict(t) for t in data.get("templates", [])]


def load_template_dir(directory: Path | str) -> List[PlanTemplate]:
    """Load every *.yaml / *.yml template in a directory."""
    directory = Path(directory)
    templates = []
    for path in sorted(directory.glob("*.y*ml")):
        try:
            templates.append(PlanTemplate.from_file(path))
        except (yaml.YAMLError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Skipping invalid template {path}: {e}")
    return templates


DEFAULT_TEMPLATES_YAML = """
templates:
  - id: new-feature
    name: New Feature
    description: Add a new feature to the codebase
    category: Development
    variables: [featureName, targetFile]
    steps:
      - {title: Analyze requirements, description: Understand feature requirements, type: analysis, complexity: 2}
      - {title: Design solution, description: Design the implementation approach, type: analysis, complexity: 3}
      - {title: Create files, description: Create new files needed, type: file-create, complexity: 2}
      - {title: Implement feature, description: Write the feature code, type: code-generation, complexity: 4}
      - {title: Add tests, description: Write unit tests, type: test, complexity: 3}
      - {title: Update documentation, description: Document the new feature, type: documentation, complexity: 2}

  - id: bug-fix
    name: Bug Fix
    description: Fix a bug in the codebase
    category: Maintenance
    variables: [bugDescription, affectedFile]
    steps:
      - {title: Reproduce bug, description: Understand and reproduce the issue, type: analysis, complexity: 2}
      - {title: Identify root cause, description: Find the source of the bug, type: analysis, complexity: 3}
      - {title: Implement fix, description: Fix the bug, type: file-modify, complexity: 3}
      - {title: Add regression test, description: Add test to prevent recurrence, type: test, complexity: 2}
      - {title: Verify fix, description: Confirm the bug is resolved, type: review, complexity: 1}

  - id: refactor
    name: Code Refactoring
    description: Refactor existing code
    category: Maintenance
    variables: [targetCode, refactorType]
    steps:
      - {title: Analyze current code, description: Understand existing implementation, type: analysis, complexity: 2}
      - {title: Plan refactoring, description: Design the refactoring approach, type: analysis, complexity: 3}
      - {title: Refactor code, description: Apply refactoring changes, type: refactor, complexity: 4}
      - {title: Update tests, description: Update tests for new structure, type: test, complexity: 2}
      - {title: Verify behavior, description: Ensure functionality unchanged, type: review, complexity: 2}
"""


def default_templates() -> List[PlanTemplate]:
    """The built-in template catalog (fresh objects on each call)."""
    return load_template_catalog(DEFAULT_TEMPLATES_YAML)
