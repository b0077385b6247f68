# planrunner - Step plan generation and execution engine
#
# Turns a natural-language request (or a named template) into an ordered,
# dependency-linked plan of steps, then executes it asynchronously with
# retries, pause/resume, cancellation, progress events and persistence.
#
# Core concepts:
# - Plan: Ordered steps with dependencies, status and metadata
# - PlanGenerator: Builds plans from prompts or templates
# - StepRunner: Performs the work of a step (registered by step type)
# - PlanExecutor: Schedules ready steps and tracks live execution state
# - PlanStore: Persists plans with a fallback backend

from .plan import Plan, Step, StepCheckpoint, StepStatus, StepType, PlanStatus
from .errors import (
    PlanRunnerError,
    TemplateNotFoundError,
    StepNotFoundError,
    PlanExecutionError,
    PlanAlreadyExecutingError,
    PlanNotExecutingError,
    StepNotFailedError,
    StepFailure,
    StepTimeoutError,
)
from .templates import PlanTemplate, TemplateStep, default_templates
from .generator import PlanGenerator, GenerationOptions
from .events import EventBus, EventType, PlanEvent, PlanProgress, Subscription
from .runner import StepRunner, StepContext, SimulatedRunner, DispatchRunner, register_runner, get_runner
from .storage import PlanStore, DirectoryBackend, IndexFileBackend, MemoryBackend
from .executor import PlanExecutor, ExecutionOptions
from .config import PlannerConfig, load_config

__all__ = [
    # Model
    "Plan",
    "Step",
    "StepCheckpoint",
    "StepStatus",
    "StepType",
    "PlanStatus",
    # Errors
    "PlanRunnerError",
    "TemplateNotFoundError",
    "StepNotFoundError",
    "PlanExecutionError",
    "PlanAlreadyExecutingError",
    "PlanNotExecutingError",
    "StepNotFailedError",
    "StepFailure",
    "StepTimeoutError",
    # Generation
    "PlanTemplate",
    "TemplateStep",
    "default_templates",
    "PlanGenerator",
    "GenerationOptions",
    # Execution
    "EventBus",
    "EventType",
    "PlanEvent",
    "PlanProgress",
    "Subscription",
    "StepRunner",
    "StepContext",
    "SimulatedRunner",
    "DispatchRunner",
    "register_runner",
    "get_runner",
    "PlanExecutor",
    "ExecutionOptions",
    # Storage and config
    "PlanStore",
    "DirectoryBackend",
    "IndexFileBackend",
    "MemoryBackend",
    "PlannerConfig",
    "load_config",
]

__version__ = "0.1.0"
