"""Rich views for orchestrations and workflow executions."""

from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from .models import (
	BatchStatus,
	OrchestrationExecution,
	OrchestrationStatus,
	WorkflowExecution,
	WorkflowStatus,
)

BATCH_ICONS = {
	BatchStatus.PENDING: "[dim][ ][/dim]",
	BatchStatus.RUNNING: "[yellow][~][/yellow]",
	BatchStatus.HEALING: "[magenta][+][/magenta]",
	BatchStatus.COMPLETED: "[green][x][/green]",
	BatchStatus.FAILED: "[red][!][/red]",
}

ORCHESTRATION_STYLES = {
	OrchestrationStatus.RUNNING: "yellow",
	OrchestrationStatus.PAUSED: "cyan",
	OrchestrationStatus.WAITING_MERGE: "cyan",
	OrchestrationStatus.NEEDS_ATTENTION: "bold red",
	OrchestrationStatus.FAILED: "red",
	OrchestrationStatus.COMPLETE: "green",
	OrchestrationStatus.CANCELLED: "dim",
}

WORKFLOW_STYLES = {
	WorkflowStatus.PENDING: "dim",
	WorkflowStatus.RUNNING: "yellow",
	WorkflowStatus.WAITING_FOR_INPUT: "cyan",
	WorkflowStatus.COMPLETED: "green",
	WorkflowStatus.FAILED: "red",
	WorkflowStatus.CANCELLED: "dim",
}


def render_orchestration(orchestration: OrchestrationExecution, console: Optional[Console] = None) -> None:
	"""Render an orchestration summary panel followed by its batch tree."""
	console = console or Console()
	style = ORCHESTRATION_STYLES.get(orchestration.status, "white")
	budget = orchestration.config.budget

	lines = [
		f"[bold]Project:[/bold] {orchestration.project_id}",
		f"[bold]Status:[/bold] [{style}]{orchestration.status.value}[/{style}]",
		f"[bold]Phase:[/bold] {orchestration.current_phase.value}",
		f"[bold]Cost:[/bold] ${orchestration.total_cost_usd:.2f} of ${budget.max_total:.2f}"
		f" [dim](healing ${orchestration.ledger.healing_cost_usd:.2f},"
		f" decisions ${orchestration.ledger.decision_cost_usd:.2f})[/dim]",
		f"[bold]Started:[/bold] {orchestration.started_at}",
	]
	if orchestration.active_execution_id:
		lines.append(f"[bold]Active execution:[/bold] {orchestration.active_execution_id}")
	if orchestration.recovery_context:
		ctx = orchestration.recovery_context
		lines.append("")
		lines.append(f"[bold red]Needs attention ({ctx.trigger.value}):[/bold red] {ctx.issue}")
		lines.append(f"[dim]Options: {', '.join(o.value for o in ctx.options)}[/dim]")
	elif orchestration.error_message:
		lines.append(f"[bold]Last error:[/bold] {orchestration.error_message}")

	console.print(Panel("\n".join(lines), title=f"Orchestration {orchestration.id}", expand=False))

	tracking = orchestration.batches
	if tracking.items:
		tree = Tree(f"[bold]Batches[/bold] [dim]({tracking.current}/{tracking.total} done)[/dim]")
		for item in tracking.items:
			icon = BATCH_ICONS.get(item.status, "[ ]")
			detail = f"{len(item.task_ids)} tasks, ${item.cost_usd:.2f}"
			if item.heal_attempts:
				detail += f", healed {item.heal_attempts}x"
			tree.add(f"{icon} [bold]{item.section}[/bold] [dim]({detail})[/dim]")
		console.print(tree)


def render_decision_log(orchestration: OrchestrationExecution, console: Optional[Console] = None, limit: int = 20) -> None:
	console = console or Console()
	table = Table(title="Decision log")
	table.add_column("Time", style="dim")
	table.add_column("Decision", style="bold")
	table.add_column("Reason")
	for entry in orchestration.decision_log[-limit:]:
		table.add_row(entry.timestamp[11:19], entry.decision, entry.reason)
	console.print(table)


def render_orchestration_list(orchestrations: list[OrchestrationExecution], console: Optional[Console] = None) -> None:
	console = console or Console()
	table = Table(title="Orchestrations")
	table.add_column("ID", style="dim")
	table.add_column("Project")
	table.add_column("Status")
	table.add_column("Phase")
	table.add_column("Batches", justify="right")
	table.add_column("Cost", justify="right")
	table.add_column("Updated", style="dim")
	for orch in orchestrations:
		style = ORCHESTRATION_STYLES.get(orch.status, "white")
		table.add_row(
			orch.id[:8],
			orch.project_id,
			f"[{style}]{orch.status.value}[/{style}]",
			orch.current_phase.value,
			f"{orch.batches.current}/{orch.batches.total}",
			f"${orch.total_cost_usd:.2f}",
			orch.updated_at[:19],
		)
	console.print(table)


def render_execution(execution: WorkflowExecution, console: Optional[Console] = None) -> None:
	"""Render one workflow execution, including outstanding questions."""
	console = console or Console()
	style = WORKFLOW_STYLES.get(execution.status, "white")
	lines = [
		f"[bold]Skill:[/bold] {execution.skill}",
		f"[bold]Project:[/bold] {execution.project_id}",
		f"[bold]Status:[/bold] [{style}]{execution.status.value}[/{style}]",
		f"[bold]Cost:[/bold] ${execution.cost_usd:.4f}",
		f"[bold]Session:[/bold] {execution.session_id or '-'}",
	]
	if execution.message:
		lines.append(f"[bold]Message:[/bold] {execution.message}")
	if execution.error:
		reason = execution.failure_reason.value if execution.failure_reason else "error"
		lines.append(f"[bold red]Error ({reason}):[/bold red] {execution.error}")
	for i, question in enumerate(execution.questions, 1):
		lines.append("")
		lines.append(f"[cyan]Q{i}. {question.question}[/cyan]" + (f" [dim]({question.header})[/dim]" if question.header else ""))
		for option in question.options:
			lines.append(f"    - {option.label}" + (f": {option.description}" if option.description else ""))
	console.print(Panel("\n".join(lines), title=f"Execution {execution.id}", expand=False))


def render_execution_list(executions: list[WorkflowExecution], console: Optional[Console] = None) -> None:
	console = console or Console()
	table = Table(title="Workflow executions")
	table.add_column("ID", style="dim")
	table.add_column("Project")
	table.add_column("Skill")
	table.add_column("Status")
	table.add_column("Cost", justify="right")
	table.add_column("Updated", style="dim")
	for execution in executions:
		style = WORKFLOW_STYLES.get(execution.status, "white")
		table.add_row(
			execution.id[:8],
			execution.project_id,
			execution.skill,
			f"[{style}]{execution.status.value}[/{style}]",
			f"${execution.cost_usd:.4f}",
			execution.updated_at[:19],
		)
	console.print(table)
