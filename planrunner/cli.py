#!/usr/bin/env python3
"""
planrunner CLI

Command-line interface for generating, storing and executing plans:
  planrunner plan - Generate a plan from a prompt
  planrunner templates - List plan templates
  planrunner template - Instantiate a template
  planrunner list / show / delete - Inspect stored plans
  planrunner run - Execute a stored plan with the simulated runner

Usage:
  planrunner plan "<prompt>" [--max-steps N] [--no-tests] [--docs]
  planrunner template <id> -v <name>=<value> ...
  planrunner run <plan_id> [--max-retries N] [--failure-rate F] [--fast]
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from .config import PlannerConfig, load_config
from .events import EventType, PlanEvent
from .executor import ExecutionOptions, PlanExecutor
from .generator import GenerationOptions, PlanGenerator
from .plan import Plan
from .runner import DispatchRunner, SimulatedRunner
from .storage import PlanStore


def parse_variables(variable_list: Optional[List[str]]) -> Dict[str, str]:
    """
    Parse variable assignments: name=value

    Returns mapping of name to value
    """
    variables = {}
    for item in variable_list or []:
        if "=" not in item:
            raise ValueError(f"Invalid variable format: {item}. Expected name=value")
        name, value = item.split("=", 1)
        variables[name.strip()] = value
    return variables


def open_store(config: PlannerConfig) -> PlanStore:
    return PlanStore.open(config.resolved_store_dir, max_fallback_plans=config.max_fallback_plans)


def make_generator(config: PlannerConfig) -> PlanGenerator:
    generator = PlanGenerator()
    for directory in config.template_dirs:
        generator.load_templates(directory)
    return generator


def find_plan(store: PlanStore, plan_id: str) -> Optional[Plan]:
    """Load a plan by full ID or unique ID prefix."""
    plan = store.load_plan(plan_id)
    if plan is not None:
        return plan
    matches = [p for p in store.list_plans() if p.id.startswith(plan_id)]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        print(f"Ambiguous plan id prefix: {plan_id}")
    return None


def cmd_plan(args, config: PlannerConfig):
    """Generate a plan from a prompt."""
    defaults = config.generation
    options = GenerationOptions(
        max_steps=args.max_steps if args.max_steps is not None else defaults.max_steps,
        include_tests=defaults.include_tests and not args.no_tests,
        include_docs=defaults.include_docs or args.docs,
        complexity=args.complexity or defaults.complexity,
        context_files=args.file or list(defaults.context_files),
    )

    plan = make_generator(config).generate_plan(args.prompt, options)
    store = open_store(config)
    store.save_plan(plan)

    print(plan.summary())
    print(f"\nPlan saved: {plan.id}")


def cmd_templates(args, config: PlannerConfig):
    """List available templates."""
    for template in make_generator(config).get_templates():
        variables = ", ".join(template.variables) or "-"
        print(f"{template.id}: {template.name} [{template.category}]")
        print(f"  {template.description}")
        print(f"  Steps: {len(template.steps)}  Variables: {variables}")


def cmd_template(args, config: PlannerConfig):
    """Instantiate a template and save the plan."""
    variables = parse_variables(args.var)
    plan = make_generator(config).from_template(args.template_id, variables)
    store = open_store(config)
    store.save_plan(plan)

    print(plan.summary())
    print(f"\nPlan saved: {plan.id}")


def cmd_list(args, config: PlannerConfig):
    """List stored plans, most recent first."""
    plans = open_store(config).list_plans()
    if not plans:
        print("No plans stored")
        return

    for plan in plans:
        done = sum(1 for s in plan.steps if s.is_terminal_success)
        print(f"{plan.id}  [{plan.status.value}]  {done}/{len(plan.steps)}  {plan.title}")


def cmd_show(args, config: PlannerConfig):
    """Show one stored plan."""
    plan = find_plan(open_store(config), args.plan_id)
    if plan is None:
        print(f"Plan not found: {args.plan_id}")
        sys.exit(1)

    if args.json:
        print(plan.to_json())
    else:
        print(plan.summary())


def cmd_delete(args, config: PlannerConfig):
    """Delete a stored plan."""
    store = open_store(config)
    plan = find_plan(store, args.plan_id)
    if plan is None or not store.delete_plan(plan.id):
        print(f"Plan not found: {args.plan_id}")
        sys.exit(1)
    print(f"Deleted plan {plan.id}")


def print_event(event: PlanEvent):
    """Print execution events as they happen."""
    payload = event.payload
    if event.event_type == EventType.PROGRESS:
        current = f" - {payload.current_step.title}" if payload.current_step else ""
        print(f"  [{payload.percent_complete:3d}%] {payload.completed_steps}/{payload.total_steps}{current}")
    elif event.event_type == EventType.STEP_COMPLETE:
        step = payload["step"]
        print(f"  [DONE] {step.number}. {step.title}")
    elif event.event_type == EventType.STEP_FAILED:
        step = payload["step"]
        print(f"  [FAILED] {step.number}. {step.title}: {step.error}")
    elif event.event_type == EventType.PLAN_PAUSED:
        print("  [PAUSED]")


def cmd_run(args, config: PlannerConfig):
    """Execute a stored plan with the simulated runner."""
    store = open_store(config)
    plan = find_plan(store, args.plan_id)
    if plan is None:
        print(f"Plan not found: {args.plan_id}")
        sys.exit(1)

    options = ExecutionOptions.from_dict(config.execution.to_dict())
    options.auto_approve = True
    if args.max_retries is not None:
        options.max_retries = args.max_retries
    if args.no_stop_on_failure:
        options.stop_on_failure = False
    if args.fast:
        options.retry_backoff = 0.0

    if args.fast:
        simulated = SimulatedRunner(base_delay=0.0, per_complexity=0.0, max_jitter=0.0,
                                    failure_rate=args.failure_rate)
    else:
        simulated = SimulatedRunner(failure_rate=args.failure_rate)

    executor = PlanExecutor(store, runner=DispatchRunner(fallback=simulated))
    if args.events:
        executor.events.subscribe_all(lambda e: print(e.to_json()))
    else:
        executor.events.subscribe_all(print_event)

    print(f"Executing plan: {plan.title} ({plan.id})")
    print(f"Steps: {len(plan.steps)}")

    asyncio.run(executor.execute(plan, options))

    print(f"\n=== {plan.status.value.upper()} ===")
    print(plan.summary())
    if not args.events and plan.status.value != "completed":
        sys.exit(1)


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        prog="planrunner",
        description="planrunner - Generate and execute step plans",
    )
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--store-dir", help="Plan storage directory")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="More logging (-v info, -vv debug)")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # plan command
    plan_parser = subparsers.add_parser("plan", help="Generate a plan from a prompt")
    plan_parser.add_argument("prompt", help="What the plan should achieve")
    plan_parser.add_argument("--max-steps", type=int, help="Maximum number of steps")
    plan_parser.add_argument("--no-tests", action="store_true", help="Skip the test step")
    plan_parser.add_argument("--docs", action="store_true", help="Add a documentation step")
    plan_parser.add_argument("--complexity", choices=["simple", "balanced", "thorough"],
                             help="Complexity preference")
    plan_parser.add_argument("-f", "--file", action="append", help="Context file (repeatable)")

    # templates command
    subparsers.add_parser("templates", help="List plan templates")

    # template command
    template_parser = subparsers.add_parser("template", help="Instantiate a plan template")
    template_parser.add_argument("template_id", help="Template ID")
    template_parser.add_argument("-v", "--var", action="append",
                                 help="Template variable: name=value")

    # list / show / delete commands
    subparsers.add_parser("list", help="List stored plans")
    show_parser = subparsers.add_parser("show", help="Show a stored plan")
    show_parser.add_argument("plan_id", help="Plan ID or unique prefix")
    show_parser.add_argument("--json", action="store_true", help="Print the plan as JSON")
    delete_parser = subparsers.add_parser("delete", help="Delete a stored plan")
    delete_parser.add_argument("plan_id", help="Plan ID or unique prefix")

    # run command
    run_parser = subparsers.add_parser("run", help="Execute a stored plan")
    run_parser.add_argument("plan_id", help="Plan ID or unique prefix")
    run_parser.add_argument("--max-retries", type=int, help="Retries per step")
    run_parser.add_argument("--no-stop-on-failure", action="store_true",
                            help="Keep going after a step fails")
    run_parser.add_argument("--failure-rate", type=float, default=0.1,
                            help="Simulated failure probability (default: 0.1)")
    run_parser.add_argument("--fast", action="store_true",
                            help="No simulated delays or retry backoff")
    run_parser.add_argument("--events", action="store_true",
                            help="Print raw events as JSON lines")

    args = parser.parse_args(argv)

    level = logging.WARNING
    if args.verbose >= 2:
        level = logging.DEBUG
    elif args.verbose == 1:
        level = logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    config = load_config(args.config)
    if args.store_dir:
        config.store_dir = Path(args.store_dir)

    commands = {
        "plan": cmd_plan,
        "templates": cmd_templates,
        "template": cmd_template,
        "list": cmd_list,
        "show": cmd_show,
        "delete": cmd_delete,
        "run": cmd_run,
    }

    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        sys.exit(1)

    try:
        command(args, config)
    except (KeyError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
