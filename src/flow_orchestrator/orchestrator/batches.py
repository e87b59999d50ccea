"""
Batch planning for the implement phase.

Batches come from task sections supplied by a ``TaskSource``. Without
sections, the remaining tasks are grouped into fixed-size batches.
"""

import logging
from pathlib import Path
from typing import Optional, Protocol

from pydantic import BaseModel, Field

from ..models import BatchItem, BatchTracking, now_iso

logger = logging.getLogger(__name__)


class TaskSection(BaseModel):
	"""A named group of incomplete tasks."""
	name: str
	task_ids: list[str] = Field(default_factory=list)
	dependencies: dict[str, list[str]] = Field(
		default_factory=dict,
		description="Task id to the task ids it depends on",
	)


class TaskInventory(BaseModel):
	"""Incomplete tasks for a project, optionally grouped into sections."""
	sections: list[TaskSection] = Field(default_factory=list)
	task_ids: list[str] = Field(default_factory=list, description="All incomplete tasks in order")


class TaskSource(Protocol):
	"""Supplies the incomplete task set when implement begins."""

	async def inventory(self, project_id: str, project_path: Optional[Path]) -> TaskInventory:
		...


class StaticTaskSource:
	"""TaskSource returning a fixed inventory for every project."""

	def __init__(self, inventory: TaskInventory):
		self._inventory = inventory

	async def inventory(self, project_id: str, project_path: Optional[Path]) -> TaskInventory:
		return self._inventory


def order_tasks(section: TaskSection) -> list[str]:
	"""
	Order a section's tasks so dependencies come first.

	Dependencies on tasks outside the section are ignored. A cycle leaves
	the section in its given order.
	"""
	ids = list(dict.fromkeys(section.task_ids))
	members = set(ids)
	ordered: list[str] = []
	placed: set[str] = set()

	remaining = ids[:]
	while remaining:
		progressed = False
		for task_id in list(remaining):
			deps = [d for d in section.dependencies.get(task_id, []) if d in members]
			if all(d in placed for d in deps):
				ordered.append(task_id)
				placed.add(task_id)
				remaining.remove(task_id)
				progressed = True
		if not progressed:
			logger.warning(f"Dependency cycle in section '{section.name}', keeping given order")
			return ids
	return ordered


def plan_batches(inventory: TaskInventory, batch_size: int) -> list[BatchItem]:
	"""Compute batches once: one per non-empty section, or fixed-size chunks."""
	sections = [s for s in inventory.sections if s.task_ids]
	if sections:
		return [
			BatchItem(index=i, section=section.name, task_ids=order_tasks(section))
			for i, section in enumerate(sections)
		]

	task_ids = list(dict.fromkeys(inventory.task_ids))
	return [
		BatchItem(index=i, section=f"Batch {i + 1}", task_ids=task_ids[start:start + batch_size])
		for i, start in enumerate(range(0, len(task_ids), batch_size))
	]


def create_batch_tracking(items: list[BatchItem]) -> BatchTracking:
	return BatchTracking(total=len(items), current=0, items=items, planned_at=now_iso())


def batch_context(item: BatchItem, additional_context: str = "") -> str:
	"""Context passed to the implement skill for one batch."""
	text = (
		f"Execute only the \"{item.section}\" section ({', '.join(item.task_ids)}). "
		"Do NOT work on tasks from other sections."
	)
	if additional_context:
		text += f"\n\n{additional_context}"
	return text


def describe_batch_plan(tracking: BatchTracking) -> str:
	"""One line per batch, for logs and the CLI."""
	if not tracking.items:
		return "No batches"
	lines = [f"{tracking.total} batches:"]
	for item in tracking.items:
		lines.append(
			f"  {item.index + 1}. {item.section} [{item.status.value}] "
			f"{len(item.task_ids)} tasks: {', '.join(item.task_ids)}"
		)
	return "\n".join(lines)


class JsonTaskSource:
	"""
	TaskSource reading a TaskInventory JSON file.

	Without an explicit path, reads ``.flow/tasks.json`` in the project
	directory. A missing file is an empty inventory.
	"""

	DEFAULT_RELATIVE_PATH = Path(".flow") / "tasks.json"

	def __init__(self, path: Optional[Path] = None):
		self.path = path

	async def inventory(self, project_id: str, project_path: Optional[Path]) -> TaskInventory:
		path = self.path
		if path is None:
			if project_path is None:
				return TaskInventory()
			path = project_path / self.DEFAULT_RELATIVE_PATH
		if not path.exists():
			logger.info(f"No task inventory for {project_id} at {path}")
			return TaskInventory()
		return TaskInventory.model_validate_json(path.read_text())
