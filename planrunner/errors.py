# planrunner/errors.py
"""
Exceptions raised by the planner, the executor and step runners.

Scheduling errors fail fast. Step failures are raised by runners and
caught by the executor, which retries them and records the final
error on the step instead of propagating it.
"""


class PlanRunnerError(Exception):
    """Base class for all planrunner errors."""


class TemplateNotFoundError(PlanRunnerError, KeyError):
    """Raised when a plan template id is not in the catalog."""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template not found: {template_id}")

    def __str__(self) -> str:
        return self.args[0]


class StepNotFoundError(PlanRunnerError, KeyError):
    """Raised when a step id does not belong to the plan."""

    def __init__(self, plan_id: str, step_id: str):
        self.plan_id = plan_id
        self.step_id = step_id
        super().__init__(f"Step {step_id} not found in plan {plan_id}")

    def __str__(self) -> str:
        return self.args[0]


class PlanExecutionError(PlanRunnerError, RuntimeError):
    """Base class for scheduling errors."""


class PlanAlreadyExecutingError(PlanExecutionError):
    """Raised when execution is requested for a plan that has live state."""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Plan {plan_id} is already executing")


class PlanNotExecutingError(PlanExecutionError):
    """Raised when a step operation targets a plan with no live state."""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Plan {plan_id} is not executing")


class StepNotFailedError(PlanExecutionError):
    """Raised when retrying a step that is not in Failed status."""

    def __init__(self, step_id: str, status: str):
        self.step_id = step_id
        self.status = status
        super().__init__(f"Step {step_id} has not failed (status: {status})")


class StepFailure(PlanRunnerError):
    """Raised by a step runner when an attempt fails."""


class SimulatedStepFailure(StepFailure):
    """Injected failure from the simulated runner."""


class StepTimeoutError(StepFailure):
    """Raised when a step attempt exceeds the configured timeout."""

    def __init__(self, step_id: str, timeout: float):
        self.step_id = step_id
        self.timeout = timeout
        super().__init__(f"Step timed out after {timeout:g}s")
