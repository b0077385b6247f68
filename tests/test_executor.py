# tests/test_executor.py
"""Tests for plan execution."""

import asyncio

import pytest

from planrunner.errors import (
    PlanAlreadyExecutingError,
    PlanNotExecutingError,
    StepFailure,
    StepNotFailedError,
    StepNotFoundError,
)
from planrunner.events import EventRecorder, EventType
from planrunner.executor import DEFAULT_STEP_OUTPUT, ExecutionOptions, PlanExecutor
from planrunner.generator import PlanGenerator
from planrunner.plan import Plan, PlanStatus, Step, StepStatus
from planrunner.runner import StepRunner
from planrunner.storage import PlanStore


class ScriptedRunner(StepRunner):
    """
    Runner whose behaviour is scripted per step ID.

    failures maps step ID to the number of attempts that fail (-1 = all).
    hooks maps step ID to a callable run at the start of every attempt.
    """

    def __init__(self, failures=None, hooks=None, outputs=None):
        self.failures = dict(failures or {})
        self.hooks = hooks or {}
        self.outputs = outputs or {}
        self.calls = []

    async def run(self, step, context):
        self.calls.append(step.id)

        hook = self.hooks.get(step.id)
        if hook is not None:
            result = hook(step, context)
            if asyncio.iscoroutine(result):
                await result

        remaining = self.failures.get(step.id, 0)
        if remaining:
            if remaining > 0:
                self.failures[step.id] = remaining - 1
            raise StepFailure(f"{step.id} failed")

        return self.outputs.get(step.id)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records backoff delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def make_plan(*specs, plan_id="plan-1") -> Plan:
    """Build a plan from (step_id, [dependency ids]) pairs."""
    steps = [
        Step(id=step_id, number=n, title=f"Step {step_id}", dependencies=list(deps))
        for n, (step_id, deps) in enumerate(specs, start=1)
    ]
    return Plan(id=plan_id, title="Test plan", steps=steps)


def chain(*step_ids, plan_id="plan-1") -> Plan:
    specs = [(sid, [step_ids[i - 1]] if i else []) for i, sid in enumerate(step_ids)]
    return make_plan(*specs, plan_id=plan_id)


@pytest.fixture
def store():
    return PlanStore()


@pytest.fixture
def sleep():
    return RecordingSleep()


def make_executor(store, runner, sleep=None):
    return PlanExecutor(store, runner=runner, sleep=sleep or RecordingSleep())


class TestExecutionOptions:
    """Test ExecutionOptions."""

    def test_defaults(self):
        options = ExecutionOptions()
        assert not options.auto_approve
        assert not options.pause_before_each
        assert options.stop_on_failure
        assert options.max_retries == 3
        assert options.step_timeout == 60.0

    def test_negative_retries(self):
        with pytest.raises(ValueError):
            ExecutionOptions(max_retries=-1)

    def test_dict_round_trip(self):
        options = ExecutionOptions(max_retries=1, step_timeout=None, stop_on_failure=False)
        assert ExecutionOptions.from_dict(options.to_dict()) == options


class TestExecute:
    """Test running plans to completion."""

    @pytest.mark.asyncio
    async def test_generated_plan_completes(self, store):
        plan = PlanGenerator().generate_plan("fix the login bug")
        runner = ScriptedRunner()
        executor = make_executor(store, runner)
        recorder = EventRecorder(executor.events)

        result = await executor.execute(plan, ExecutionOptions(auto_approve=True))

        assert result is plan
        assert plan.status == PlanStatus.COMPLETED
        assert plan.completed_at is not None
        assert runner.calls == [s.id for s in plan.steps]
        assert all(s.status == StepStatus.COMPLETED for s in plan.steps)
        assert all(s.output == DEFAULT_STEP_OUTPUT for s in plan.steps)
        assert all(s.checkpoint.progress == 100 for s in plan.steps)
        assert len(recorder.of_type(EventType.STEP_COMPLETE)) == 5
        assert len(recorder.of_type(EventType.PLAN_COMPLETE)) == 1
        assert recorder.of_type(EventType.PROGRESS)[-1].payload.percent_complete == 100
        assert store.load_plan(plan.id).status == PlanStatus.COMPLETED
        assert not executor.is_executing(plan.id)
        assert executor.live_plan_ids() == []

    @pytest.mark.asyncio
    async def test_dependencies_complete_before_dependents(self, store):
        """Diamond: b and c need a, d needs b and c."""
        plan = make_plan(("d", ["b", "c"]), ("b", ["a"]), ("c", ["a"]), ("a", []))
        seen = {}

        def check_deps(step, context):
            seen[step.id] = [context.plan.get_step(d).status for d in step.dependencies]

        runner = ScriptedRunner(hooks={sid: check_deps for sid in "abcd"})
        executor = make_executor(store, runner)

        await executor.execute(plan)

        assert runner.calls.index("a") < runner.calls.index("b") < runner.calls.index("d")
        assert runner.calls.index("c") < runner.calls.index("d")
        for statuses in seen.values():
            assert all(s == StepStatus.COMPLETED for s in statuses)
        assert plan.status == PlanStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_runner_output_recorded(self, store):
        plan = chain("a")
        executor = make_executor(store, ScriptedRunner(outputs={"a": "3 files changed"}))
        await executor.execute(plan)
        assert plan.steps[0].output == "3 files changed"

    @pytest.mark.asyncio
    async def test_empty_plan(self, store):
        plan = Plan(id="empty", title="Nothing to do")
        executor = make_executor(store, ScriptedRunner())
        await executor.execute(plan)
        assert plan.status == PlanStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_progress_events(self, store):
        plan = chain("a", "b")
        executor = make_executor(store, ScriptedRunner())
        progress = []
        executor.on_progress(progress.append)

        await executor.execute(plan)

        assert progress[0].completed_steps == 0
        assert progress[0].current_step.id == "a"
        assert progress[0].estimated_time_remaining is None
        assert [p.percent_complete for p in progress][-1] == 100
        assert all(p.total_steps == 2 for p in progress)
        counts = [p.completed_steps for p in progress]
        assert counts == sorted(counts)

    @pytest.mark.asyncio
    async def test_subscription_handles(self, store):
        plan = chain("a", "b")
        executor = make_executor(store, ScriptedRunner())
        completed = []
        finished = []

        unsubscribe = executor.on_step_complete(lambda payload: completed.append(payload["step"].id))
        executor.on_plan_complete(finished.append)

        def stop_listening(step, context):
            unsubscribe()

        executor.runner.hooks["b"] = stop_listening
        await executor.execute(plan)

        assert completed == ["a"]
        assert finished == [plan]

    @pytest.mark.asyncio
    async def test_plan_saved_at_start(self, store):
        plan = chain("a")
        statuses = []

        def check_store(step, context):
            statuses.append(store.load_plan(plan.id).status)

        executor = make_executor(store, ScriptedRunner(hooks={"a": check_store}))
        await executor.execute(plan)

        assert statuses == [PlanStatus.EXECUTING]

    @pytest.mark.asyncio
    async def test_already_executing(self, store):
        plan = chain("a")
        release = asyncio.Event()

        async def block(step, context):
            await release.wait()

        executor = make_executor(store, ScriptedRunner(hooks={"a": block}))
        task = asyncio.create_task(executor.execute(plan))
        await asyncio.sleep(0)

        assert executor.is_executing(plan.id)
        with pytest.raises(PlanAlreadyExecutingError):
            await executor.execute(plan)

        release.set()
        await task
        assert plan.status == PlanStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_interrupted_steps_restart(self, store):
        plan = chain("a", "b", "c")
        plan.steps[0].status = StepStatus.COMPLETED
        plan.steps[1].status = StepStatus.IN_PROGRESS
        plan.steps[1].started_at = 1.0
        runner = ScriptedRunner()
        executor = make_executor(store, runner)

        await executor.execute(plan)

        assert runner.calls == ["b", "c"]
        assert plan.status == PlanStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_checkpoints_reach_store(self, store):
        plan = chain("a")
        stored = []

        def report(step, context):
            context.report_checkpoint(50, last_item="auth.py")
            stored.append(store.load_plan(plan.id).get_step("a").checkpoint)

        executor = make_executor(store, ScriptedRunner(hooks={"a": report}))
        await executor.execute(plan)

        assert stored[0].progress == 50
        assert stored[0].last_item == "auth.py"
        assert plan.steps[0].checkpoint.progress == 100

    @pytest.mark.asyncio
    async def test_completion_checkpoint_saved(self):
        class RecordingStore(PlanStore):
            def __init__(self):
                super().__init__()
                self.checkpoints = []

            def save_checkpoint(self, plan_id, step_id, checkpoint):
                self.checkpoints.append((step_id, checkpoint.progress))
                super().save_checkpoint(plan_id, step_id, checkpoint)

        store = RecordingStore()
        plan = chain("a", "b")
        await make_executor(store, ScriptedRunner()).execute(plan)

        assert store.checkpoints == [("a", 100), ("b", 100)]
        assert store.load_plan(plan.id).get_step("b").checkpoint.progress == 100


class TestFailures:
    """Test retries, failures and stalls."""

    @pytest.mark.asyncio
    async def test_failure_without_retries(self, store):
        plan = chain("a", "b")
        runner = ScriptedRunner(failures={"a": -1})
        executor = make_executor(store, runner)
        recorder = EventRecorder(executor.events)

        await executor.execute(plan, ExecutionOptions(max_retries=0))

        assert runner.calls == ["a"]
        assert plan.steps[0].status == StepStatus.FAILED
        assert plan.steps[0].error == "a failed"
        assert plan.steps[1].status == StepStatus.PENDING
        assert plan.status == PlanStatus.FAILED
        assert plan.completed_at is None
        assert all(e.payload.completed_steps == 0 for e in recorder.of_type(EventType.PROGRESS))
        assert len(recorder.of_type(EventType.STEP_FAILED)) == 1
        assert store.load_plan(plan.id).status == PlanStatus.FAILED

    @pytest.mark.asyncio
    async def test_retry_then_succeed(self, store, sleep):
        plan = chain("a")
        runner = ScriptedRunner(failures={"a": 2})
        executor = make_executor(store, runner, sleep)

        await executor.execute(plan, ExecutionOptions(max_retries=3, retry_backoff=0.5))

        assert runner.calls == ["a", "a", "a"]
        assert sleep.delays == [0.5, 1.0]
        assert plan.steps[0].status == StepStatus.COMPLETED
        assert plan.steps[0].error is None
        assert plan.status == PlanStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, store, sleep):
        plan = chain("a")
        runner = ScriptedRunner(failures={"a": -1})
        executor = make_executor(store, runner, sleep)

        await executor.execute(plan, ExecutionOptions(max_retries=2))

        assert len(runner.calls) == 3
        assert len(sleep.delays) == 2
        assert plan.status == PlanStatus.FAILED

    @pytest.mark.asyncio
    async def test_attempt_numbers(self, store):
        plan = chain("a")
        attempts = []
        runner = ScriptedRunner(failures={"a": 1}, hooks={"a": lambda s, c: attempts.append(c.attempt)})
        await make_executor(store, runner).execute(plan, ExecutionOptions(max_retries=1))
        assert attempts == [0, 1]

    @pytest.mark.asyncio
    async def test_error_without_message(self, store):
        class SilentRunner(StepRunner):
            async def run(self, step, context):
                raise RuntimeError()

        plan = chain("a")
        await make_executor(store, SilentRunner()).execute(plan, ExecutionOptions(max_retries=0))
        assert plan.steps[0].error == "RuntimeError"

    @pytest.mark.asyncio
    async def test_continue_after_failure(self, store):
        plan = make_plan(("a", []), ("b", ["a"]), ("c", []))
        runner = ScriptedRunner(failures={"a": -1})
        executor = make_executor(store, runner)

        await executor.execute(plan, ExecutionOptions(max_retries=0, stop_on_failure=False))

        assert runner.calls == ["a", "c"]
        assert plan.get_step("c").status == StepStatus.COMPLETED
        assert plan.get_step("b").status == StepStatus.PENDING
        assert plan.status == PlanStatus.FAILED

    @pytest.mark.asyncio
    async def test_timeout(self, store):
        async def hang(step, context):
            await asyncio.sleep(10)

        plan = chain("a")
        executor = make_executor(store, ScriptedRunner(hooks={"a": hang}))

        await executor.execute(plan, ExecutionOptions(max_retries=0, step_timeout=0.05))

        assert plan.steps[0].status == StepStatus.FAILED
        assert plan.steps[0].error == "Step timed out after 0.05s"
        assert plan.status == PlanStatus.FAILED

    @pytest.mark.asyncio
    async def test_timeout_disabled(self, store):
        async def short(step, context):
            await asyncio.sleep(0.01)

        plan = chain("a")
        executor = make_executor(store, ScriptedRunner(hooks={"a": short}))
        await executor.execute(plan, ExecutionOptions(step_timeout=None))
        assert plan.status == PlanStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_missing_dependency_stalls(self, store):
        plan = make_plan(("a", []), ("b", ["ghost"]))
        runner = ScriptedRunner()
        executor = make_executor(store, runner)

        await executor.execute(plan)

        assert runner.calls == ["a"]
        assert plan.status == PlanStatus.STALLED
        assert "missing ghost" in plan.metadata["stall_reason"]
        assert store.load_plan(plan.id).status == PlanStatus.STALLED

    @pytest.mark.asyncio
    async def test_cycle_stalls(self, store):
        plan = make_plan(("a", ["b"]), ("b", ["a"]))
        runner = ScriptedRunner()
        executor = make_executor(store, runner)

        await executor.execute(plan)

        assert runner.calls == []
        assert plan.status == PlanStatus.STALLED
        assert executor.live_plan_ids() == []

    @pytest.mark.asyncio
    async def test_stall_reason_cleared_on_rerun(self, store):
        plan = make_plan(("a", []), ("b", ["ghost"]))
        executor = make_executor(store, ScriptedRunner())
        await executor.execute(plan)

        plan.steps[1].dependencies = ["a"]
        await executor.execute(plan)

        assert plan.status == PlanStatus.COMPLETED
        assert "stall_reason" not in plan.metadata


class TestPauseResume:
    """Test pause, resume and approval gating."""

    @pytest.mark.asyncio
    async def test_pause_before_each(self, store):
        plan = chain("a", "b", "c")
        runner = ScriptedRunner()
        executor = make_executor(store, runner)
        options = ExecutionOptions(pause_before_each=True)

        await executor.execute(plan, options)
        assert runner.calls == []
        assert plan.status == PlanStatus.PAUSED
        assert executor.is_paused(plan.id)
        assert store.load_plan(plan.id).status == PlanStatus.PAUSED

        await executor.resume(plan.id)
        assert runner.calls == ["a"]
        assert plan.status == PlanStatus.PAUSED

        await executor.resume(plan.id)
        assert runner.calls == ["a", "b"]

        await executor.resume(plan.id)
        assert runner.calls == ["a", "b", "c"]
        assert plan.status == PlanStatus.COMPLETED
        assert not executor.is_paused(plan.id)
        assert executor.live_plan_ids() == []

    @pytest.mark.asyncio
    async def test_auto_approve_overrides_pause_before_each(self, store):
        plan = chain("a", "b")
        runner = ScriptedRunner()
        executor = make_executor(store, runner)

        await executor.execute(plan, ExecutionOptions(pause_before_each=True, auto_approve=True))

        assert runner.calls == ["a", "b"]
        assert plan.status == PlanStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_pause_during_step(self, store):
        """The running step finishes; the next one waits for resume."""
        plan = chain("a", "b", "c")
        runner = ScriptedRunner()
        executor = make_executor(store, runner)
        runner.hooks["a"] = lambda step, context: executor.pause(plan.id)
        recorder = EventRecorder(executor.events)

        await executor.execute(plan)

        assert runner.calls == ["a"]
        assert plan.steps[0].status == StepStatus.COMPLETED
        assert plan.status == PlanStatus.PAUSED
        assert EventType.PLAN_PAUSED in recorder.types()
        assert EventType.PLAN_COMPLETE not in recorder.types()

        await executor.resume(plan.id)

        assert runner.calls == ["a", "b", "c"]
        assert plan.status == PlanStatus.COMPLETED
        assert EventType.PLAN_RESUMED in recorder.types()

    @pytest.mark.asyncio
    async def test_pause_then_resume_while_running(self, store):
        """Resume before the loop reaches its pause check keeps it going."""
        plan = chain("a", "b")
        runner = ScriptedRunner()
        executor = make_executor(store, runner)

        async def flip(step, context):
            executor.pause(plan.id)
            await executor.resume(plan.id)

        runner.hooks["a"] = flip
        await executor.execute(plan)

        assert runner.calls == ["a", "b"]
        assert plan.status == PlanStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_controls_ignore_unknown_plans(self, store):
        executor = make_executor(store, ScriptedRunner())
        executor.pause("nope")
        await executor.resume("nope")
        executor.cancel("nope")
        assert executor.get_progress("nope") is None

    @pytest.mark.asyncio
    async def test_resume_when_not_paused_is_noop(self, store):
        plan = chain("a")
        runner = ScriptedRunner()
        executor = make_executor(store, runner)
        await executor.execute(plan)

        await executor.resume(plan.id)
        assert runner.calls == ["a"]


class TestCancel:
    """Test cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_during_step(self, store):
        plan = chain("a", "b", "c")
        runner = ScriptedRunner()
        executor = make_executor(store, runner)
        runner.hooks["b"] = lambda step, context: executor.cancel(plan.id)
        recorder = EventRecorder(executor.events)

        await executor.execute(plan)

        assert runner.calls == ["a", "b"]
        assert plan.get_step("b").status == StepStatus.COMPLETED
        assert plan.get_step("c").status != StepStatus.COMPLETED
        assert plan.status == PlanStatus.CANCELLED
        assert recorder.types().count(EventType.PLAN_CANCELLED) == 1
        assert recorder.types().count(EventType.PLAN_COMPLETE) == 1
        assert store.load_plan(plan.id).status == PlanStatus.CANCELLED
        assert executor.live_plan_ids() == []

    @pytest.mark.asyncio
    async def test_cancel_paused_plan(self, store):
        plan = chain("a", "b")
        executor = make_executor(store, ScriptedRunner())
        recorder = EventRecorder(executor.events)
        await executor.execute(plan, ExecutionOptions(pause_before_each=True))

        executor.cancel(plan.id)

        assert plan.status == PlanStatus.CANCELLED
        assert store.load_plan(plan.id).status == PlanStatus.CANCELLED
        assert recorder.types().count(EventType.PLAN_COMPLETE) == 1
        assert executor.live_plan_ids() == []


class TestStepControl:
    """Test skip_step, retry_step and execute_step."""

    @pytest.mark.asyncio
    async def test_skip_step(self, store):
        plan = chain("a", "b", "c")
        runner = ScriptedRunner()
        executor = make_executor(store, runner)
        runner.hooks["a"] = lambda step, context: executor.skip_step(plan.id, "b")
        progress = []
        executor.on_progress(progress.append)

        await executor.execute(plan)

        assert runner.calls == ["a", "c"]
        assert plan.get_step("b").status == StepStatus.SKIPPED
        assert plan.get_step("b").completed_at is not None
        assert plan.status == PlanStatus.COMPLETED
        assert progress[-1].percent_complete == 100

    @pytest.mark.asyncio
    async def test_skip_requires_live_plan(self, store):
        executor = make_executor(store, ScriptedRunner())
        with pytest.raises(PlanNotExecutingError):
            executor.skip_step("nope", "a")

    @pytest.mark.asyncio
    async def test_skip_unknown_step(self, store):
        plan = chain("a")
        executor = make_executor(store, ScriptedRunner())
        await executor.execute(plan, ExecutionOptions(pause_before_each=True))

        with pytest.raises(StepNotFoundError):
            executor.skip_step(plan.id, "ghost")

    @pytest.mark.asyncio
    async def test_retry_failed_step(self, store):
        plan = chain("a", "b", "c")
        runner = ScriptedRunner(failures={"b": 1})
        executor = make_executor(store, runner)
        # Keep live state around after the failure
        runner.hooks["b"] = lambda step, context: executor.pause(plan.id) if context.attempt == 0 else None

        await executor.execute(plan, ExecutionOptions(max_retries=0))
        assert plan.get_step("b").status == StepStatus.FAILED

        step = await executor.retry_step(plan.id, "b")
        assert step.status == StepStatus.COMPLETED
        assert step.error is None
        assert plan.get_step("c").status == StepStatus.READY

        await executor.resume(plan.id)
        assert runner.calls == ["a", "b", "b", "c"]
        assert plan.status == PlanStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_retry_non_failed_step(self, store):
        plan = chain("a", "b")
        runner = ScriptedRunner()
        executor = make_executor(store, runner)
        await executor.execute(plan, ExecutionOptions(pause_before_each=True))

        with pytest.raises(StepNotFailedError):
            await executor.retry_step(plan.id, "a")

        assert plan.get_step("a").status == StepStatus.READY
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_retry_requires_live_plan(self, store):
        executor = make_executor(store, ScriptedRunner())
        with pytest.raises(PlanNotExecutingError):
            await executor.retry_step("nope", "a")

    @pytest.mark.asyncio
    async def test_execute_step(self, store):
        plan = chain("a", "b")
        runner = ScriptedRunner()
        executor = make_executor(store, runner)
        await executor.execute(plan, ExecutionOptions(pause_before_each=True))

        step = await executor.execute_step(plan.id, "a")

        assert step.status == StepStatus.COMPLETED
        assert plan.get_step("b").status == StepStatus.READY
        assert executor.get_progress(plan.id).completed_steps == 1

    @pytest.mark.asyncio
    async def test_independent_executors(self, store):
        plan = chain("a")
        first = make_executor(store, ScriptedRunner())
        second = make_executor(store, ScriptedRunner())
        await first.execute(plan, ExecutionOptions(pause_before_each=True))

        assert first.live_plan_ids() == [plan.id]
        assert second.live_plan_ids() == []
