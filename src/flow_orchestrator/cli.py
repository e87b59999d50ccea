"""CLI for flow-orchestrator: projects, workflow executions, orchestrations, and reconciliation."""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from dotenv import load_dotenv
from rich.console import Console

from .agent import ClaudeAgent
from .config import Config, load_config
from .errors import OrchestratorError
from .logging_config import setup_logging
from .models import Budget, OrchestrationConfig, WorkflowStatus
from .orchestrator.batches import JsonTaskSource
from .orchestrator.engine import OrchestrationEngine
from .orchestrator.supervisor import ProcessRegistry, WorkflowSupervisor
from .projects import ProjectRegistry
from .store import ExecutionStore
from .views import (
	render_decision_log,
	render_execution,
	render_execution_list,
	render_orchestration,
	render_orchestration_list,
)

logger = logging.getLogger(__name__)
console = Console()


@dataclass
class Runtime:
	"""Wired-up components for one CLI invocation."""
	config: Config
	projects: ProjectRegistry
	store: ExecutionStore
	supervisor: WorkflowSupervisor
	engine: OrchestrationEngine


async def build_runtime(config: Config, tasks_file: Optional[Path] = None) -> Runtime:
	projects = ProjectRegistry.load(config.registry_file)
	store = ExecutionStore(config.db_path)
	await store.init()
	supervisor = WorkflowSupervisor(
		store,
		projects,
		ClaudeAgent(binary=config.claude_binary),
		registry=ProcessRegistry(),
		config=config,
	)
	engine = OrchestrationEngine(
		store,
		supervisor,
		projects,
		task_source=JsonTaskSource(tasks_file),
		config=config,
	)
	return Runtime(config=config, projects=projects, store=store, supervisor=supervisor, engine=engine)


def _run(args: argparse.Namespace, handler: Callable[[Runtime, argparse.Namespace], Awaitable[None]]) -> None:
	"""Build the runtime, run one async command handler, then stop owned agents and close the store."""
	config = load_config()

	async def _main() -> None:
		runtime = await build_runtime(config, getattr(args, "tasks", None))
		try:
			await handler(runtime, args)
		finally:
			# Agents cannot outlive the process that watches them
			await runtime.supervisor.shutdown()
			await runtime.store.close()

	asyncio.run(_main())


def _parse_answers(pairs: list[str]) -> dict[str, str]:
	answers = {}
	for pair in pairs:
		key, sep, value = pair.partition("=")
		if not sep or not key:
			raise SystemExit(f"Answers must be key=value, got {pair!r}")
		answers[key.strip()] = value.strip()
	return answers


# =============================================================================
# Projects
# =============================================================================

def cmd_project_add(args: argparse.Namespace) -> None:
	"""Register a project id and its working directory."""
	config = load_config()
	path = Path(args.path).expanduser()
	if not path.is_dir():
		raise SystemExit(f"Not a directory: {path}")
	registry = ProjectRegistry.load(config.registry_file)
	entry = registry.register(args.project_id, path, name=args.name or "")
	registry.save()
	console.print(f"[green]Registered[/green] {entry.id} -> {entry.path}")


def cmd_project_list(args: argparse.Namespace) -> None:
	config = load_config()
	registry = ProjectRegistry.load(config.registry_file)
	entries = registry.entries()
	if not entries:
		console.print("[dim]No projects registered[/dim]")
		return
	for entry in entries:
		console.print(f"  [bold]{entry.id}[/bold]  {entry.path}")


# =============================================================================
# Workflow executions
# =============================================================================

async def _wait_for_execution(runtime: Runtime, execution_id: str):
	interval = runtime.config.poll_interval_seconds
	while True:
		execution = await runtime.supervisor.get(execution_id)
		if execution.status not in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING):
			return execution
		await asyncio.sleep(interval)


async def _workflow_start(runtime: Runtime, args: argparse.Namespace) -> None:
	execution = await runtime.supervisor.start(
		args.project_id,
		args.skill,
		timeout_seconds=args.timeout,
		context=args.context or "",
	)
	console.print(f"Started execution [bold]{execution.id}[/bold]")
	execution = await _wait_for_execution(runtime, execution.id)
	render_execution(execution, console)


async def _workflow_answer(runtime: Runtime, args: argparse.Namespace) -> None:
	execution = await runtime.supervisor.resume(args.execution_id, _parse_answers(args.answers))
	execution = await _wait_for_execution(runtime, execution.id)
	render_execution(execution, console)


async def _workflow_cancel(runtime: Runtime, args: argparse.Namespace) -> None:
	execution = await runtime.supervisor.cancel(args.execution_id)
	render_execution(execution, console)


async def _workflow_show(runtime: Runtime, args: argparse.Namespace) -> None:
	render_execution(await runtime.supervisor.get(args.execution_id), console)


async def _workflow_list(runtime: Runtime, args: argparse.Namespace) -> None:
	render_execution_list(await runtime.supervisor.list_executions(args.project), console)


# =============================================================================
# Orchestrations
# =============================================================================

def _orchestration_config(args: argparse.Namespace) -> OrchestrationConfig:
	return OrchestrationConfig(
		skip_design=args.skip_design,
		skip_analyze=args.skip_analyze,
		skip_verify=args.skip_verify,
		auto_merge=args.auto_merge,
		auto_heal_enabled=not args.no_heal,
		max_heal_attempts=args.max_heal_attempts,
		batch_size_fallback=args.batch_size,
		pause_between_batches=args.pause_between_batches,
		additional_context=args.context or "",
		budget=Budget(
			max_per_batch=args.max_per_batch,
			max_total=args.max_total,
			healing_budget=args.healing_budget,
			decision_budget=args.decision_budget,
		),
	)


async def _drive(runtime: Runtime, orchestration_id: str) -> None:
	"""Poll until the orchestration needs an operator, then show it."""
	orchestration = await runtime.engine.run(orchestration_id)
	render_orchestration(orchestration, console)
	active = await runtime.engine.active_execution(orchestration_id)
	if active is not None and active.status == WorkflowStatus.WAITING_FOR_INPUT:
		render_execution(active, console)
		console.print(f"[cyan]Answer with:[/cyan] flow-orchestrator orch answer {orchestration_id} key=value ...")


async def _orch_start(runtime: Runtime, args: argparse.Namespace) -> None:
	orchestration = await runtime.engine.start(args.project_id, _orchestration_config(args))
	console.print(f"Started orchestration [bold]{orchestration.id}[/bold]")
	await _drive(runtime, orchestration.id)


async def _orch_show(runtime: Runtime, args: argparse.Namespace) -> None:
	orchestration = await runtime.engine.get(args.orchestration_id)
	render_orchestration(orchestration, console)
	render_decision_log(orchestration, console, limit=args.log)


async def _orch_list(runtime: Runtime, args: argparse.Namespace) -> None:
	render_orchestration_list(await runtime.engine.list_orchestrations(args.project), console)


async def _orch_pause(runtime: Runtime, args: argparse.Namespace) -> None:
	render_orchestration(await runtime.engine.pause(args.orchestration_id), console)


async def _orch_cancel(runtime: Runtime, args: argparse.Namespace) -> None:
	render_orchestration(await runtime.engine.cancel(args.orchestration_id), console)


async def _orch_resume(runtime: Runtime, args: argparse.Namespace) -> None:
	await runtime.engine.resume(args.orchestration_id)
	await _drive(runtime, args.orchestration_id)


async def _orch_merge(runtime: Runtime, args: argparse.Namespace) -> None:
	await runtime.engine.trigger_merge(args.orchestration_id)
	await _drive(runtime, args.orchestration_id)


async def _orch_recover(runtime: Runtime, args: argparse.Namespace) -> None:
	await runtime.engine.recover(args.orchestration_id, args.action)
	await _drive(runtime, args.orchestration_id)


async def _orch_answer(runtime: Runtime, args: argparse.Namespace) -> None:
	await runtime.engine.answer(args.orchestration_id, _parse_answers(args.answers))
	await _drive(runtime, args.orchestration_id)


async def _orch_run(runtime: Runtime, args: argparse.Namespace) -> None:
	await _drive(runtime, args.orchestration_id)


async def _reconcile(runtime: Runtime, args: argparse.Namespace) -> None:
	lost = await runtime.engine.reconcile()
	if not lost:
		console.print("[green]Nothing to reconcile[/green]")
		return
	for execution in lost:
		console.print(f"[yellow]Marked lost:[/yellow] {execution.id} ({execution.skill}, {execution.project_id})")


def _handler(fn: Callable[[Runtime, argparse.Namespace], Awaitable[None]]) -> Callable[[argparse.Namespace], None]:
	def run(args: argparse.Namespace) -> None:
		_run(args, fn)
	return run


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="flow-orchestrator",
		description="Drive multi-phase agent workflows: design, analyze, implement, verify, merge",
	)
	parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR (default: $LOG_LEVEL or INFO)")
	subparsers = parser.add_subparsers(dest="command")

	# project
	project_parser = subparsers.add_parser("project", help="Manage registered projects")
	project_sub = project_parser.add_subparsers(dest="project_command")
	project_add = project_sub.add_parser("add", help="Register a project")
	project_add.add_argument("project_id")
	project_add.add_argument("path")
	project_add.add_argument("--name", default=None)
	project_add.set_defaults(func=cmd_project_add)
	project_list = project_sub.add_parser("list", help="List registered projects")
	project_list.set_defaults(func=cmd_project_list)

	# workflow
	wf_parser = subparsers.add_parser("workflow", help="Single agent invocations")
	wf_sub = wf_parser.add_subparsers(dest="workflow_command")
	wf_start = wf_sub.add_parser("start", help="Run one skill and wait for it")
	wf_start.add_argument("project_id")
	wf_start.add_argument("skill")
	wf_start.add_argument("--context", default=None)
	wf_start.add_argument("--timeout", type=float, default=None, help="Timeout in seconds")
	wf_start.set_defaults(func=_handler(_workflow_start))
	wf_answer = wf_sub.add_parser("answer", help="Answer a waiting execution")
	wf_answer.add_argument("execution_id")
	wf_answer.add_argument("answers", nargs="+", help="key=value pairs")
	wf_answer.set_defaults(func=_handler(_workflow_answer))
	wf_cancel = wf_sub.add_parser("cancel", help="Cancel an execution")
	wf_cancel.add_argument("execution_id")
	wf_cancel.set_defaults(func=_handler(_workflow_cancel))
	wf_show = wf_sub.add_parser("show", help="Show an execution")
	wf_show.add_argument("execution_id")
	wf_show.set_defaults(func=_handler(_workflow_show))
	wf_list = wf_sub.add_parser("list", help="List executions")
	wf_list.add_argument("--project", default=None)
	wf_list.set_defaults(func=_handler(_workflow_list))

	# orch
	orch_parser = subparsers.add_parser("orch", help="Multi-phase orchestrations")
	orch_sub = orch_parser.add_subparsers(dest="orch_command")

	orch_start = orch_sub.add_parser("start", help="Start an orchestration")
	orch_start.add_argument("project_id")
	orch_start.add_argument("--skip-design", action="store_true")
	orch_start.add_argument("--skip-analyze", action="store_true")
	orch_start.add_argument("--skip-verify", action="store_true")
	orch_start.add_argument("--auto-merge", action="store_true")
	orch_start.add_argument("--no-heal", action="store_true", help="Disable auto-heal")
	orch_start.add_argument("--max-heal-attempts", type=int, default=1)
	orch_start.add_argument("--batch-size", type=int, default=15, help="Fallback batch size")
	orch_start.add_argument("--pause-between-batches", action="store_true")
	orch_start.add_argument("--context", default=None, help="Additional context for every skill")
	orch_start.add_argument("--max-per-batch", type=float, default=5.0)
	orch_start.add_argument("--max-total", type=float, default=50.0)
	orch_start.add_argument("--healing-budget", type=float, default=2.0)
	orch_start.add_argument("--decision-budget", type=float, default=0.5)
	orch_start.add_argument("--tasks", type=Path, default=None, help="Task inventory JSON (default: <project>/.flow/tasks.json)")
	orch_start.set_defaults(func=_handler(_orch_start))

	orch_list = orch_sub.add_parser("list", help="List orchestrations")
	orch_list.add_argument("--project", default=None)
	orch_list.set_defaults(func=_handler(_orch_list))

	orch_show = orch_sub.add_parser("show", help="Show an orchestration and its decision log")
	orch_show.add_argument("orchestration_id")
	orch_show.add_argument("--log", type=int, default=20, help="Decision log entries to show")
	orch_show.set_defaults(func=_handler(_orch_show))

	for name, fn, help_text in (
		("pause", _orch_pause, "Pause a running orchestration"),
		("cancel", _orch_cancel, "Cancel an orchestration"),
	):
		sub = orch_sub.add_parser(name, help=help_text)
		sub.add_argument("orchestration_id")
		sub.set_defaults(func=_handler(fn))

	for name, fn, help_text in (
		("resume", _orch_resume, "Resume a paused orchestration"),
		("merge", _orch_merge, "Trigger the merge phase"),
		("run", _orch_run, "Poll an orchestration until it needs an operator"),
	):
		sub = orch_sub.add_parser(name, help=help_text)
		sub.add_argument("orchestration_id")
		sub.add_argument("--tasks", type=Path, default=None)
		sub.set_defaults(func=_handler(fn))

	orch_recover = orch_sub.add_parser("recover", help="Recover from needs_attention")
	orch_recover.add_argument("orchestration_id")
	orch_recover.add_argument("action", help="retry, skip or abort")
	orch_recover.add_argument("--tasks", type=Path, default=None)
	orch_recover.set_defaults(func=_handler(_orch_recover))

	orch_answer = orch_sub.add_parser("answer", help="Answer the active execution's questions")
	orch_answer.add_argument("orchestration_id")
	orch_answer.add_argument("answers", nargs="+", help="key=value pairs")
	orch_answer.set_defaults(func=_handler(_orch_answer))

	# reconcile
	reconcile_parser = subparsers.add_parser("reconcile", help="Fail executions lost by a previous run")
	reconcile_parser.set_defaults(func=_handler(_reconcile))

	return parser


def main() -> None:
	"""CLI entry point."""
	load_dotenv()
	parser = build_parser()
	args = parser.parse_args()

	if not hasattr(args, "func"):
		parser.print_help()
		sys.exit(1)

	config = load_config()
	setup_logging(level=args.log_level, log_dir=config.log_dir)

	try:
		args.func(args)
	except OrchestratorError as e:
		console.print(f"[bold red]Error:[/bold red] {e}")
		sys.exit(1)
	except KeyboardInterrupt:
		console.print("[yellow]Interrupted[/yellow]")
		sys.exit(130)


if __name__ == "__main__":
	main()
