# planrunner/runner.py
"""
Step runner base class and registry.

Runners perform the actual work of a step. They are registered by
step type and looked up by DispatchRunner during execution. A runner
signals failure by raising; the executor decides whether to retry.
"""

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from .errors import SimulatedStepFailure
from .plan import Plan, Step, StepCheckpoint, StepType

logger = logging.getLogger(__name__)

# Global runner registry
_RUNNERS: Dict[StepType, "StepRunner"] = {}


@dataclass
class StepContext:
    """
    What a runner gets to know about the attempt it is running.

    Attributes:
        plan: The plan the step belongs to
        attempt: Zero-based attempt number
        checkpoint_sink: Called with checkpoints reported by the runner
    """
    plan: Plan
    attempt: int = 0
    checkpoint_sink: Optional[Callable[[StepCheckpoint], None]] = field(default=None, repr=False)

    def report_checkpoint(
        self,
        progress: int,
        last_item: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> StepCheckpoint:
        """Record partial progress so an interrupted step can resume."""
        checkpoint = StepCheckpoint(
            progress=progress,
            timestamp=time.time(),
            last_item=last_item,
            data=data or {},
        )
        if self.checkpoint_sink is not None:
            self.checkpoint_sink(checkpoint)
        return checkpoint


class StepRunner(ABC):
    """
    Base class for step runners.

    Subclasses implement run() to perform the step's work.
    """

    @abstractmethod
    async def run(self, step: Step, context: StepContext) -> Optional[str]:
        """
        Perform the step.

        Args:
            step: The step to run (status is InProgress)
            context: Plan, attempt number and checkpoint reporting

        Returns:
            Output text for the step, or None for the default message

        Raises:
            Exception: Any exception marks the attempt as failed
        """
        pass

    def validate(self, step: Step) -> List[str]:
        """
        Validate that this runner can handle a step.

        Returns list of error messages (empty if valid).
        """
        return []


def register_runner(step_type: StepType, runner: Optional[StepRunner] = None):
    """
    Register the runner for a step type.

    Registers an instance directly, or works as a class decorator that
    registers a single instance of the decorated class.

    Usage:
        register_runner(StepType.REVIEW, CallableRunner(review))

        @register_runner(StepType.TEST)
        class PytestRunner(StepRunner):
            ...
    """
    def add(instance: StepRunner) -> None:
        if step_type in _RUNNERS:
            logger.warning(f"Overwriting runner for {step_type.value}")
        _RUNNERS[step_type] = instance

    if runner is not None:
        add(runner)
        return runner

    def decorator(cls: Type[StepRunner]) -> Type[StepRunner]:
        add(cls())
        return cls
    return decorator


def get_runner(step_type: StepType) -> Optional[StepRunner]:
    """The runner registered for a step type, or None."""
    return _RUNNERS.get(step_type)


def list_runners() -> Dict[str, StepRunner]:
    """Registered runners keyed by step type value."""
    return {k.value: v for k, v in _RUNNERS.items()}


def clear_runners():
    """Clear all registered runners (for testing)."""
    _RUNNERS.clear()


class SimulatedRunner(StepRunner):
    """
    Stand-in for real step work.

    Sleeps base_delay + complexity * per_complexity + up to max_jitter
    seconds, then fails with probability failure_rate.
    """

    def __init__(
        self,
        base_delay: float = 0.5,
        per_complexity: float = 0.2,
        max_jitter: float = 0.5,
        failure_rate: float = 0.1,
        rng: Optional[random.Random] = None,
    ):
        if not 0.0 <= failure_rate <= 1.0:
            raise ValueError(f"failure_rate must be between 0 and 1, got {failure_rate}")
        self.base_delay = base_delay
        self.per_complexity = per_complexity
        self.max_jitter = max_jitter
        self.failure_rate = failure_rate
        self.rng = rng or random.Random()

    def estimate_duration(self, step: Step) -> float:
        """Expected duration without jitter."""
        return self.base_delay + step.complexity * self.per_complexity

    async def run(self, step: Step, context: StepContext) -> Optional[str]:
        delay = self.estimate_duration(step) + self.rng.random() * self.max_jitter
        await asyncio.sleep(delay)

        if self.rng.random() < self.failure_rate:
            raise SimulatedStepFailure("Simulated step failure")

        return f"Step completed successfully in {delay:.2f}s"


class CallableRunner(StepRunner):
    """Adapts a plain coroutine function to the StepRunner interface."""

    def __init__(self, func: Callable[[Step, StepContext], Awaitable[Optional[str]]]):
        self.func = func

    async def run(self, step: Step, context: StepContext) -> Optional[str]:
        return await self.func(step, context)


class DispatchRunner(StepRunner):
    """
    Routes each step to the runner registered for its type.

    Steps without a registered runner go to the fallback runner
    (SimulatedRunner unless one is given).
    """

    def __init__(
        self,
        fallback: Optional[StepRunner] = None,
        runners: Optional[Dict[StepType, StepRunner]] = None,
    ):
        self.fallback = fallback or SimulatedRunner()
        self.runners: Dict[StepType, StepRunner] = dict(runners or {})

    def resolve(self, step: Step) -> StepRunner:
        """Explicit runners win over the registry; the fallback takes the rest."""
        runner = self.runners.get(step.step_type) or get_runner(step.step_type)
        return runner or self.fallback

    def validate(self, step: Step) -> List[str]:
        return self.resolve(step).validate(step)

    async def run(self, step: Step, context: StepContext) -> Optional[str]:
        runner = self.resolve(step)
        logger.debug(f"Dispatching step {step.id} ({step.step_type.value}) to {type(runner).__name__}")
        return await runner.run(step, context)
