# planrunner/executor.py
"""
Plan executor - the scheduler.

Advances a plan through its steps in dependency order:
1. Promote Pending steps whose dependencies are satisfied to Ready
2. Run Ready steps one at a time, in plan order, retrying failures
3. Stop when the plan finishes, fails, stalls, is paused or cancelled

Execution is cooperative. pause(), cancel() and skip_step() only flip
flags and statuses; the scheduling loop notices them at its next check.
A step that is already running is never interrupted.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import (
    PlanAlreadyExecutingError,
    PlanNotExecutingError,
    StepNotFailedError,
    StepNotFoundError,
    StepTimeoutError,
)
from .events import EventBus, EventCallback, EventType, PlanEvent, PlanProgress, Subscription
from .plan import Plan, PlanStatus, Step, StepCheckpoint, StepStatus
from .runner import DispatchRunner, StepContext, StepRunner
from .storage import PlanStore

logger = logging.getLogger(__name__)

DEFAULT_STEP_OUTPUT = "Step completed successfully"


@dataclass
class ExecutionOptions:
    """
    Options for plan execution.

    Attributes:
        auto_approve: Run steps without waiting for approval
        pause_before_each: Pause before every step (unless auto_approve)
        stop_on_failure: Stop the pass when a step exhausts its retries
        max_retries: Retries per step after the first attempt
        step_timeout: Seconds allowed per attempt (None or 0 disables)
        retry_backoff: Seconds to wait per retry number (linear backoff)
    """
    auto_approve: bool = False
    pause_before_each: bool = False
    stop_on_failure: bool = True
    max_retries: int = 3
    step_timeout: Optional[float] = 60.0
    retry_backoff: float = 1.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionOptions":
        defaults = cls()
        return cls(
            auto_approve=data.get("auto_approve", defaults.auto_approve),
            pause_before_each=data.get("pause_before_each", defaults.pause_before_each),
            stop_on_failure=data.get("stop_on_failure", defaults.stop_on_failure),
            max_retries=data.get("max_retries", defaults.max_retries),
            step_timeout=data.get("step_timeout", defaults.step_timeout),
            retry_backoff=data.get("retry_backoff", defaults.retry_backoff),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "auto_approve": self.auto_approve,
            "pause_before_each": self.pause_before_each,
            "stop_on_failure": self.stop_on_failure,
            "max_retries": self.max_retries,
            "step_timeout": self.step_timeout,
            "retry_backoff": self.retry_backoff,
        }


@dataclass
class ExecutionState:
    """Live, in-memory record of an executing or paused plan."""
    plan: Plan
    options: ExecutionOptions
    start_time: float
    is_paused: bool = False
    is_cancelled: bool = False
    current_step_index: int = 0
    stall_reason: Optional[str] = None
    awaiting_step_id: Optional[str] = None  # Step the plan paused in front of
    approved_step_id: Optional[str] = None  # Step released by resume()


class PlanExecutor:
    """
    Executes plans step by step.

    Each executor owns its own registry of live execution states, keyed
    by plan ID, so independent executors never share state.
    """

    def __init__(
        self,
        store: PlanStore,
        runner: Optional[StepRunner] = None,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the executor.

        Args:
            store: Where plans and checkpoints are persisted
            runner: Performs step work (defaults to DispatchRunner)
            event_bus: Where events are published (a private bus by default)
            clock: Time source in seconds
            sleep: Coroutine used for retry backoff
        """
        self.store = store
        self.runner = runner or DispatchRunner()
        self.events = event_bus or EventBus()
        self._clock = clock
        self._sleep = sleep
        self._states: Dict[str, ExecutionState] = {}
        # Plans whose scheduling loop is currently running
        self._active: Dict[str, ExecutionState] = {}

    # Subscriptions

    def on_progress(self, callback: Callable[[PlanProgress], None]) -> Subscription:
        """Subscribe to progress updates."""
        return self.events.subscribe(EventType.PROGRESS, lambda e: callback(e.payload))

    def on_step_complete(self, callback: Callable[[Dict[str, Any]], None]) -> Subscription:
        """Subscribe to step completion ({"plan_id": ..., "step": ...})."""
        return self.events.subscribe(EventType.STEP_COMPLETE, lambda e: callback(e.payload))

    def on_plan_complete(self, callback: Callable[[Plan], None]) -> Subscription:
        """Subscribe to the end of execution (any final status)."""
        return self.events.subscribe(EventType.PLAN_COMPLETE, lambda e: callback(e.payload))

    def subscribe(self, event_type: EventType, callback: EventCallback) -> Subscription:
        return self.events.subscribe(event_type, callback)

    # Plan-level control

    async def execute(self, plan: Plan, options: Optional[ExecutionOptions] = None) -> Plan:
        """
        Execute a plan until it finishes, fails, stalls, pauses or is cancelled.

        The plan is mutated in place. Returns when the scheduling loop
        stops; if it stopped because of a pause, resume() continues it.

        Raises:
            PlanAlreadyExecutingError: If the plan already has live state
        """
        if plan.id in self._states:
            raise PlanAlreadyExecutingError(plan.id)

        state = ExecutionState(
            plan=plan,
            options=options or ExecutionOptions(),
            start_time=self._clock(),
        )
        self._states[plan.id] = state

        try:
            self._reset_interrupted_steps(plan)
            plan.status = PlanStatus.EXECUTING
            plan.metadata.pop("stall_reason", None)
            plan.touch(self._clock())
            self._update_ready_steps(plan)
            logger.info(f"Executing plan {plan.id} ({len(plan.steps)} steps)")
            self.store.save_plan(plan)
        except BaseException:
            self._release(state)
            raise

        await self._drive(state)
        return plan

    def pause(self, plan_id: str) -> None:
        """Pause at the next scheduling decision point. No-op for unknown plans."""
        state = self._states.get(plan_id)
        if state is None:
            return
        state.is_paused = True
        state.plan.status = PlanStatus.PAUSED
        state.plan.touch(self._clock())
        logger.info(f"Pausing plan {plan_id}")
        self._publish(EventType.PLAN_PAUSED, plan_id, state.plan)
        self._fire_progress(state)

    async def resume(self, plan_id: str) -> None:
        """Resume a paused plan and run it until it stops again."""
        state = self._states.get(plan_id)
        if state is None or not state.is_paused:
            return

        state.is_paused = False
        state.approved_step_id = state.awaiting_step_id
        state.awaiting_step_id = None
        state.plan.status = PlanStatus.EXECUTING
        state.plan.touch(self._clock())
        logger.info(f"Resuming plan {plan_id}")
        self._publish(EventType.PLAN_RESUMED, plan_id, state.plan)

        if self._active.get(plan_id) is state:
            # The running loop has not reached its pause check yet
            return

        await self._drive(state)

    def cancel(self, plan_id: str) -> None:
        """Cancel a plan. The running step, if any, finishes first."""
        state = self._states.get(plan_id)
        if state is None:
            return
        plan = state.plan
        state.is_cancelled = True
        plan.status = PlanStatus.CANCELLED
        plan.touch(self._clock())
        self._release(state)
        logger.info(f"Cancelled plan {plan_id}")
        self._publish(EventType.PLAN_CANCELLED, plan_id, plan)

        if self._active.get(plan_id) is not state:
            # No loop left to finish the plan (it was paused)
            self.store.save_plan(plan)
            self._publish(EventType.PLAN_COMPLETE, plan_id, plan)

    # Step-level control

    async def execute_step(self, plan_id: str, step_id: str) -> Step:
        """
        Run one step directly, bypassing the scheduling loop.

        Raises:
            PlanNotExecutingError: If the plan has no live state
            StepNotFoundError: If the step is not part of the plan
        """
        state, step = self._lookup(plan_id, step_id)
        await self._run_step(state, step)
        return step

    def skip_step(self, plan_id: str, step_id: str) -> Step:
        """
        Mark a step Skipped; dependents treat it as satisfied.

        Raises:
            PlanNotExecutingError: If the plan has no live state
            StepNotFoundError: If the step is not part of the plan
        """
        state, step = self._lookup(plan_id, step_id)
        step.status = StepStatus.SKIPPED
        step.completed_at = self._clock()
        state.plan.touch(step.completed_at)
        self._update_ready_steps(state.plan)
        logger.info(f"Skipped step {step.number} ({step.title}) of plan {plan_id}")
        self._fire_progress(state)
        return step

    async def retry_step(self, plan_id: str, step_id: str) -> Step:
        """
        Reset a Failed step and run it again.

        Raises:
            PlanNotExecutingError: If the plan has no live state
            StepNotFoundError: If the step is not part of the plan
            StepNotFailedError: If the step is not in Failed status
        """
        state, step = self._lookup(plan_id, step_id)
        if step.status != StepStatus.FAILED:
            raise StepNotFailedError(step_id, step.status.value)

        step.reset(StepStatus.READY)
        logger.info(f"Retrying step {step.number} ({step.title}) of plan {plan_id}")
        await self._run_step(state, step)
        return step

    # Inspection

    def get_progress(self, plan_id: str) -> Optional[PlanProgress]:
        state = self._states.get(plan_id)
        if state is None:
            return None
        return self._calculate_progress(state)

    def is_executing(self, plan_id: str) -> bool:
        """True while a scheduling loop is running for the plan."""
        return plan_id in self._active

    def is_paused(self, plan_id: str) -> bool:
        """True if the plan has live state and is paused."""
        state = self._states.get(plan_id)
        return state is not None and state.is_paused

    def live_plan_ids(self) -> List[str]:
        """IDs of plans with live state (executing or paused)."""
        return list(self._states)

    # Scheduling

    async def _drive(self, state: ExecutionState) -> None:
        """Run the scheduling loop, then finish the plan unless it paused."""
        plan = state.plan
        self._active[plan.id] = state
        keep_state = False
        try:
            await self._execute_steps(state)

            if state.is_paused and not state.is_cancelled:
                self.store.save_plan(plan)
                logger.info(f"Plan {plan.id} paused")
                keep_state = True
                return

            self._finish(state)
            self.store.save_plan(plan)
            logger.info(f"Plan {plan.id} finished with status {plan.status.value}")
            self._publish(EventType.PLAN_COMPLETE, plan.id, plan)
        finally:
            if self._active.get(plan.id) is state:
                del self._active[plan.id]
            if not keep_state:
                self._release(state)

    def _finish(self, state: ExecutionState) -> None:
        """Derive the final plan status after the loop has stopped."""
        plan = state.plan
        now = self._clock()
        plan.touch(now)

        if state.is_cancelled:
            return

        if plan.is_finished:
            plan.status = PlanStatus.COMPLETED
            plan.completed_at = now
        elif plan.steps_with_status(StepStatus.FAILED):
            plan.status = PlanStatus.FAILED
        elif state.stall_reason:
            plan.status = PlanStatus.STALLED
            plan.metadata["stall_reason"] = state.stall_reason
            logger.warning(f"Plan {plan.id} stalled: {state.stall_reason}")

    async def _execute_steps(self, state: ExecutionState) -> None:
        """The scheduling loop."""
        plan, options = state.plan, state.options

        while not state.is_paused and not state.is_cancelled:
            ready_steps = plan.ready_steps()

            if not ready_steps:
                pending = plan.steps_with_status(StepStatus.PENDING)
                if not pending:
                    break  # All done

                if not any(self._can_become_ready(s, plan) for s in pending):
                    state.stall_reason = self._describe_stall(plan, pending)
                    break  # Stuck

                self._update_ready_steps(plan)
                continue

            for step in ready_steps:
                if state.is_paused or state.is_cancelled:
                    break
                if step.status != StepStatus.READY:
                    continue  # Changed from outside while an earlier step ran

                if state.approved_step_id == step.id:
                    state.approved_step_id = None
                elif options.pause_before_each and not options.auto_approve:
                    state.awaiting_step_id = step.id
                    state.is_paused = True
                    plan.status = PlanStatus.PAUSED
                    plan.touch(self._clock())
                    logger.info(f"Plan {plan.id} awaiting approval before step {step.number}")
                    self._publish(EventType.PLAN_PAUSED, plan.id, plan)
                    self._fire_progress(state)
                    return

                await self._run_step(state, step)

                if step.status == StepStatus.FAILED and options.stop_on_failure:
                    return

    async def _run_step(self, state: ExecutionState, step: Step) -> None:
        """Run one step with retries, recording the outcome on the step."""
        plan, options = state.plan, state.options

        step.status = StepStatus.IN_PROGRESS
        step.started_at = self._clock()
        step.error = None
        state.current_step_index = plan.steps.index(step)
        logger.debug(f"Starting step {step.number} ({step.title}) of plan {plan.id}")
        self._fire_progress(state)

        attempt = 0
        while True:
            context = StepContext(
                plan=plan,
                attempt=attempt,
                checkpoint_sink=lambda cp: self._save_checkpoint(plan, step, cp),
            )
            try:
                output = await self._attempt(step, context, options.step_timeout)
            except Exception as e:
                attempt += 1
                message = str(e) or type(e).__name__
                if attempt > options.max_retries:
                    step.status = StepStatus.FAILED
                    step.error = message
                    step.completed_at = self._clock()
                    plan.touch(step.completed_at)
                    logger.error(
                        f"Step {step.number} ({step.title}) of plan {plan.id} failed "
                        f"after {attempt} attempt(s): {message}"
                    )
                    self._publish(EventType.STEP_FAILED, plan.id, {"plan_id": plan.id, "step": step})
                    self._fire_progress(state)
                    return

                logger.warning(
                    f"Step {step.number} attempt {attempt} failed: {message}; "
                    f"retrying ({attempt}/{options.max_retries})"
                )
                await self._sleep(options.retry_backoff * attempt)
                continue

            step.status = StepStatus.COMPLETED
            step.completed_at = self._clock()
            step.output = output or DEFAULT_STEP_OUTPUT
            step.checkpoint = StepCheckpoint(progress=100, timestamp=step.completed_at)
            plan.touch(step.completed_at)

            self._update_ready_steps(plan)
            logger.debug(f"Completed step {step.number} ({step.title}) of plan {plan.id}")
            self._publish(EventType.STEP_COMPLETE, plan.id, {"plan_id": plan.id, "step": step})
            self._fire_progress(state)

            self.store.save_checkpoint(plan.id, step.id, step.checkpoint)
            self.store.save_plan(plan)
            return

    async def _attempt(self, step: Step, context: StepContext, timeout: Optional[float]) -> Optional[str]:
        """One call into the runner, bounded by the step timeout."""
        if not timeout:
            return await self.runner.run(step, context)
        try:
            return await asyncio.wait_for(self.runner.run(step, context), timeout)
        except asyncio.TimeoutError:
            raise StepTimeoutError(step.id, timeout) from None

    def _save_checkpoint(self, plan: Plan, step: Step, checkpoint: StepCheckpoint) -> None:
        """Record a mid-step checkpoint reported by a runner."""
        step.checkpoint = checkpoint
        self.store.save_checkpoint(plan.id, step.id, checkpoint)

    # Dependency bookkeeping

    def _update_ready_steps(self, plan: Plan) -> None:
        """Promote Pending steps whose dependencies are satisfied."""
        for step in plan.steps_with_status(StepStatus.PENDING):
            if plan.dependencies_satisfied(step):
                step.status = StepStatus.READY

    def _can_become_ready(self, step: Step, plan: Plan) -> bool:
        return plan.dependencies_satisfied(step)

    def _reset_interrupted_steps(self, plan: Plan) -> None:
        """Steps left running by an interrupted execution start over."""
        for step in plan.steps_with_status(StepStatus.IN_PROGRESS, StepStatus.PAUSED):
            logger.info(f"Resetting interrupted step {step.number} ({step.title}) of plan {plan.id}")
            step.status = StepStatus.PENDING
            step.started_at = None

    def _describe_stall(self, plan: Plan, pending: List[Step]) -> str:
        """Explain which steps are blocked and by what."""
        step_by_id = {s.id: s for s in plan.steps}
        blocked = []
        for step in pending:
            reasons = []
            for dep_id in step.dependencies:
                dep = step_by_id.get(dep_id)
                if dep is None:
                    reasons.append(f"missing {dep_id}")
                elif not dep.is_terminal_success:
                    reasons.append(f"step {dep.number} is {dep.status.value}")
            blocked.append(f"step {step.number} waits on {', '.join(reasons)}")
        return "; ".join(blocked)

    # Helpers

    def _lookup(self, plan_id: str, step_id: str):
        state = self._states.get(plan_id)
        if state is None:
            raise PlanNotExecutingError(plan_id)
        step = state.plan.get_step(step_id)
        if step is None:
            raise StepNotFoundError(plan_id, step_id)
        return state, step

    def _release(self, state: ExecutionState) -> None:
        """Drop live state, unless the plan ID has been reused since."""
        plan_id = state.plan.id
        if self._states.get(plan_id) is state:
            del self._states[plan_id]

    def _calculate_progress(self, state: ExecutionState) -> PlanProgress:
        plan = state.plan
        total = len(plan.steps)
        completed = len(plan.steps_with_status(StepStatus.COMPLETED, StepStatus.SKIPPED))
        in_progress = plan.steps_with_status(StepStatus.IN_PROGRESS)
        elapsed = self._clock() - state.start_time

        estimated_remaining = None
        if completed > 0:
            estimated_remaining = (elapsed / completed) * (total - completed)

        return PlanProgress(
            plan_id=plan.id,
            total_steps=total,
            completed_steps=completed,
            percent_complete=round(completed / total * 100) if total else 0,
            elapsed_time=elapsed,
            current_step=in_progress[0] if in_progress else None,
            estimated_time_remaining=estimated_remaining,
        )

    def _fire_progress(self, state: ExecutionState) -> None:
        self._publish(EventType.PROGRESS, state.plan.id, self._calculate_progress(state))

    def _publish(self, event_type: EventType, plan_id: str, payload: Any) -> None:
        self.events.publish(PlanEvent(
            event_type=event_type,
            plan_id=plan_id,
            payload=payload,
            timestamp=self._clock(),
        ))
