# planrunner/plan.py
"""
Core plan data structures.

A Plan is a DAG of Steps. Each step names the steps it depends on;
a step may run only once every dependency is Completed or Skipped.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


def generate_id(prefix: str) -> str:
    """Generate an opaque unique identifier with a readable prefix."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class StepStatus(Enum):
    """Status of a plan step."""
    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in-progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# Statuses that satisfy a dependency
SATISFIED_STATUSES = (StepStatus.COMPLETED, StepStatus.SKIPPED)


class StepType(Enum):
    """Kind of work a step represents."""
    ANALYSIS = "analysis"
    FILE_CREATE = "file-create"
    FILE_MODIFY = "file-modify"
    FILE_DELETE = "file-delete"
    CODE_GENERATION = "code-generation"
    REFACTOR = "refactor"
    TEST = "test"
    DOCUMENTATION = "documentation"
    REVIEW = "review"
    DEPLOY = "deploy"
    CUSTOM = "custom"


class PlanStatus(Enum):
    """Status of a plan."""
    DRAFT = "draft"
    READY = "ready"
    EXECUTING = "executing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    STALLED = "stalled"  # Remaining steps can never become ready


@dataclass
class StepCheckpoint:
    """
    Partial progress of a step, enabling mid-step resume.

    Attributes:
        progress: Percentage complete (0-100)
        last_item: Last processed item, if the step works through a list
        data: Runner-specific state
        timestamp: When the checkpoint was taken
    """
    progress: int
    timestamp: float = field(default_factory=time.time)
    last_item: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not 0 <= self.progress <= 100:
            raise ValueError(f"Checkpoint progress must be 0-100, got {self.progress}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "progress": self.progress,
            "last_item": self.last_item,
            "data": self.data,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepCheckpoint":
        return cls(
            progress=data["progress"],
            timestamp=data.get("timestamp", time.time()),
            last_item=data.get("last_item"),
            data=data.get("data") or {},
        )


@dataclass
class Step:
    """
    A single unit of work in a plan.

    Attributes:
        id: Unique identifier
        number: 1-indexed display order
        title: Short summary
        description: Detailed description
        step_type: Kind of work (analysis, test, review, ...)
        status: Current status
        dependencies: IDs of steps that must complete (or be skipped) first
        complexity: Estimated effort, 1-5
        affected_files: Files the step is expected to touch
        output: Result text once completed
        error: Error message if failed
        started_at: When the step last started running
        completed_at: When the step completed, failed or was skipped
        checkpoint: Partial progress for resume
    """
    id: str
    number: int
    title: str
    description: str = ""
    step_type: StepType = StepType.CUSTOM
    status: StepStatus = StepStatus.PENDING
    dependencies: List[str] = field(default_factory=list)
    complexity: int = 1
    affected_files: List[str] = field(default_factory=list)
    output: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    checkpoint: Optional[StepCheckpoint] = None

    def __post_init__(self):
        if not 1 <= self.complexity <= 5:
            raise ValueError(f"Step complexity must be 1-5, got {self.complexity}")

    @property
    def is_terminal_success(self) -> bool:
        """True if the step satisfies dependents (Completed or Skipped)."""
        return self.status in SATISFIED_STATUSES

    @property
    def duration(self) -> Optional[float]:
        """Seconds between start and completion, if both are known."""
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def reset(self, status: StepStatus = StepStatus.PENDING) -> None:
        """Clear run results so the step can run again."""
        self.status = status
        self.output = None
        self.error = None
        self.started_at = None
        self.completed_at = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "number": self.number,
            "title": self.title,
            "description": self.description,
            "type": self.step_type.value,
            "status": self.status.value,
            "dependencies": list(self.dependencies),
            "complexity": self.complexity,
            "affected_files": list(self.affected_files),
            "output": self.output,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        checkpoint = data.get("checkpoint")
        return cls(
            id=data["id"],
            number=data["number"],
            title=data["title"],
            description=data.get("description", ""),
            step_type=StepType(data.get("type", StepType.CUSTOM.value)),
            status=StepStatus(data.get("status", StepStatus.PENDING.value)),
            dependencies=list(data.get("dependencies", [])),
            complexity=data.get("complexity", 1),
            affected_files=list(data.get("affected_files", [])),
            output=data.get("output"),
            error=data.get("error"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            checkpoint=StepCheckpoint.from_dict(checkpoint) if checkpoint else None,
        )


@dataclass
class Plan:
    """
    An ordered collection of steps plus lifecycle status.

    Steps are kept in generation order, not execution order; the
    executor derives execution order from the dependencies.

    Attributes:
        id: Unique identifier
        title: Plan title
        description: Plan description
        prompt: The goal the plan was generated from
        steps: Steps in generation order
        status: Current status
        created_at: Creation timestamp
        updated_at: Last modification timestamp
        completed_at: Completion timestamp
        total_complexity: Sum of step complexities
        tags: Free-text labels
        metadata: Additional data (archetype, stall reason, ...)
    """
    id: str
    title: str
    description: str = ""
    prompt: str = ""
    steps: List[Step] = field(default_factory=list)
    status: PlanStatus = PlanStatus.DRAFT
    created_at: float = field(default_factory=time.time)
    updated_at: Optional[float] = None
    completed_at: Optional[float] = None
    total_complexity: Optional[int] = None
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.updated_at is None:
            self.updated_at = self.created_at
        if self.total_complexity is None:
            self.recompute_complexity()

    def recompute_complexity(self) -> int:
        """Recompute total_complexity from the steps."""
        self.total_complexity = sum(s.complexity for s in self.steps)
        return self.total_complexity

    def touch(self, now: Optional[float] = None) -> None:
        """Mark the plan as modified."""
        self.updated_at = now if now is not None else time.time()

    def get_step(self, step_id: str) -> Optional[Step]:
        """Get step by ID."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def steps_with_status(self, *statuses: StepStatus) -> List[Step]:
        """Steps whose status is one of the given statuses, in plan order."""
        return [s for s in self.steps if s.status in statuses]

    def ready_steps(self) -> List[Step]:
        return self.steps_with_status(StepStatus.READY)

    def dependencies_satisfied(self, step: Step) -> bool:
        """
        Check whether every dependency of a step is Completed or Skipped.

        A step with no dependencies is always satisfied. A dependency on
        an ID that is not part of this plan is never satisfied.
        """
        for dep_id in step.dependencies:
            dep = self.get_step(dep_id)
            if dep is None or not dep.is_terminal_success:
                return False
        return True

    @property
    def is_finished(self) -> bool:
        """True if every step is Completed or Skipped."""
        return all(s.is_terminal_success for s in self.steps)

    def topological_order(self) -> List[str]:
        """
        Return step IDs in dependency order (dependencies first).

        Raises:
            ValueError: If the dependency graph contains a cycle
        """
        step_by_id = {s.id: s for s in self.steps}
        visiting = set()
        visited = set()
        order = []

        def visit(step_id: str):
            if step_id in visited:
                return
            if step_id in visiting:
                raise ValueError(f"Dependency cycle through step {step_id}")
            visiting.add(step_id)
            for dep_id in step_by_id[step_id].dependencies:
                if dep_id in step_by_id:
                    visit(dep_id)
            visiting.discard(step_id)
            visited.add(step_id)
            order.append(step_id)

        for step in self.steps:
            visit(step.id)

        return order

    def validate(self) -> List[str]:
        """Validate plan structure. Returns list of errors (empty if valid)."""
        errors = []

        seen = set()
        for step in self.steps:
            if step.id in seen:
                errors.append(f"Duplicate step id {step.id}")
            seen.add(step.id)

        for step in self.steps:
            for dep_id in step.dependencies:
                if dep_id not in seen:
                    errors.append(f"Step {step.id} references missing dependency {dep_id}")
                elif dep_id == step.id:
                    errors.append(f"Step {step.id} depends on itself")

        if not errors:
            try:
                self.topological_order()
            except ValueError as e:
                errors.append(str(e))

        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "prompt": self.prompt,
            "steps": [s.to_dict() for s in self.steps],
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "total_complexity": self.total_complexity,
            "tags": list(self.tags),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Plan":
        return cls(
            id=data["id"],
            title=data["title"],
            description=data.get("description", ""),
            prompt=data.get("prompt", ""),
            steps=[Step.from_dict(s) for s in data.get("steps", [])],
            status=PlanStatus(data.get("status", PlanStatus.DRAFT.value)),
            created_at=data["created_at"],
            updated_at=data.get("updated_at"),
            completed_at=data.get("completed_at"),
            total_complexity=data.get("total_complexity"),
            tags=list(data.get("tags", [])),
            metadata=data.get("metadata") or {},
        )

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls, json_str: str) -> "Plan":
        return cls.from_dict(json.loads(json_str))

    def copy(self) -> "Plan":
        """Deep copy via the serialized form."""
        return Plan.from_dict(json.loads(json.dumps(self.to_dict())))

    def summary(self) -> str:
        """Get a human-readable summary of the plan."""
        lines = [
            f"Plan: {self.title}",
            f"ID: {self.id}",
            f"Status: {self.status.value}",
            f"Steps: {len(self.steps)} (complexity {self.total_complexity})",
        ]
        if self.tags:
            lines.append(f"Tags: {', '.join(self.tags)}")
        if self.metadata.get("stall_reason"):
            lines.append(f"Stalled: {self.metadata['stall_reason']}")
        lines.append("")

        numbers = {s.id: s.number for s in self.steps}
        for step in self.steps:
            deps = ", ".join(str(numbers.get(d, "?")) for d in step.dependencies)
            after = f" (after {deps})" if deps else ""
            lines.append(
                f"  {step.number}. [{step.status.value}] {step.title} "
                f"<{step.step_type.value}, c{step.complexity}>{after}"
            )
            if step.error:
                lines.append(f"     error: {step.error}")

        return "\n".join(lines)
