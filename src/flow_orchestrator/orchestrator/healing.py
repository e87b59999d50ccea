"""
Healing Controller - remediation attempts for failed implement batches.

A failed batch is healed in place: the heal-attempt counter increments,
the batch is marked ``healing`` and a healer execution is started with
the failure context. Healing stops at ``max_heal_attempts`` or when the
healing budget would be exceeded.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from ..models import (
	AttentionTrigger,
	BatchItem,
	BatchStatus,
	OrchestrationExecution,
	WorkflowExecution,
	now_iso,
)
from .budget import BudgetTracker, ExecutionKind
from .supervisor import WorkflowSupervisor

logger = logging.getLogger(__name__)

STDERR_EXCERPT = 2000


@dataclass
class HealDecision:
	allowed: bool
	trigger: Optional[AttentionTrigger] = None
	reason: str = ""


@dataclass
class FailureContext:
	"""What the healer is told about the failure it is repairing."""
	section: str
	task_ids: list[str]
	error: str
	stderr: str = ""
	session_id: Optional[str] = None
	attempt: int = 1
	previous_executions: list[str] = field(default_factory=list)

	@classmethod
	def from_failure(cls, batch: BatchItem, failed: WorkflowExecution) -> "FailureContext":
		return cls(
			section=batch.section,
			task_ids=list(batch.task_ids),
			error=failed.error or f"Execution ended {failed.status.value}",
			stderr=failed.stderr[:STDERR_EXCERPT],
			session_id=failed.session_id,
			attempt=batch.heal_attempts,
			previous_executions=batch.execution_ids + batch.healer_execution_ids,
		)

	def to_prompt(self, additional_context: str = "") -> str:
		lines = [
			"# Auto-Heal Request",
			"",
			"A batch implementation failed and needs recovery. Complete the remaining tasks.",
			"",
			"## Failure Details",
			"",
			f"**Section**: {self.section}",
			f"**Heal attempt**: {self.attempt}",
			f"**Error**: {self.error}",
		]
		if self.stderr:
			lines.extend(["", "**Stderr**:", "```", self.stderr, "```"])
		lines.extend([
			"",
			"## Tasks",
			"",
			f"**Attempted Tasks**: {', '.join(self.task_ids)}",
			"",
			f"Focus ONLY on these tasks: {', '.join(self.task_ids)}",
			"Do NOT re-implement tasks that are already complete.",
		])
		if additional_context:
			lines.extend(["", "## Additional Context", "", additional_context])
		return "\n".join(lines)


class HealingController:
	"""Decides whether a failed batch gets another attempt, and starts it."""

	def __init__(self, supervisor: WorkflowSupervisor, skill: str = "flow.heal"):
		self.supervisor = supervisor
		self.skill = skill

	def evaluate(self, orchestration: OrchestrationExecution, batch: BatchItem) -> HealDecision:
		"""Refuse when healing is disabled, attempts are used up, or the healing budget would be exceeded."""
		config = orchestration.config
		if not config.auto_heal_enabled:
			return HealDecision(False, AttentionTrigger.HEAL_DISABLED, "Auto-heal is disabled")

		if batch.heal_attempts >= config.max_heal_attempts:
			return HealDecision(
				False,
				AttentionTrigger.HEAL_EXHAUSTED,
				f"Heal attempts exhausted ({batch.heal_attempts}/{config.max_heal_attempts})",
			)

		tracker = BudgetTracker(orchestration)
		if tracker.healing_exhausted():
			return HealDecision(
				False,
				AttentionTrigger.HEAL_BUDGET,
				f"Healing budget exhausted (projected ${tracker.projected_healing_cost():.2f}"
				f" of ${config.budget.healing_budget:.2f})",
			)

		return HealDecision(True)

	async def start_healer(
		self,
		orchestration: OrchestrationExecution,
		batch: BatchItem,
		failed: WorkflowExecution,
	) -> WorkflowExecution:
		"""
		Start a healer for a failed batch.

		Raises:
			BudgetExceededError: run or per-batch cap already met
			ProjectNotFoundError: project no longer resolves
		"""
		BudgetTracker(orchestration).check_can_start(ExecutionKind.HEALER, batch)

		batch.heal_attempts += 1
		batch.status = BatchStatus.HEALING
		batch.started_at = now_iso()

		context = FailureContext.from_failure(batch, failed)
		healer = await self.supervisor.start(
			orchestration.project_id,
			self.skill,
			context=context.to_prompt(orchestration.config.additional_context),
		)

		batch.healer_execution_ids.append(healer.id)
		orchestration.executions.healers.append(healer.id)
		logger.info(
			f"Started healer {healer.id} for batch {batch.index} "
			f"(attempt {batch.heal_attempts}/{orchestration.config.max_heal_attempts})"
		)
		return healer
