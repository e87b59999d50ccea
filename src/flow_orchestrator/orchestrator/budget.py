"""
Budget Tracker - cost bookkeeping against an orchestration's ceilings.

Pure bookkeeping over ``OrchestrationExecution.ledger``: no I/O, no
external calls. Costs are recorded by delta per execution id so that
observing the same execution repeatedly, or across resumes, never
double counts.
"""

import logging
from enum import Enum
from typing import Optional

from ..errors import BudgetExceededError
from ..models import BatchItem, OrchestrationExecution, WorkflowExecution

logger = logging.getLogger(__name__)


class ExecutionKind(str, Enum):
	"""What an execution is being started for."""
	PHASE = "phase"
	BATCH = "batch"
	HEALER = "healer"


class BudgetTracker:
	"""Running totals for one orchestration."""

	def __init__(self, orchestration: OrchestrationExecution):
		self.orchestration = orchestration
		self.budget = orchestration.config.budget
		self.ledger = orchestration.ledger

	@property
	def total_spent(self) -> float:
		"""Everything charged to the run, decision consultations included."""
		return self.orchestration.total_cost_usd + self.ledger.decision_cost_usd

	def check_can_start(self, kind: ExecutionKind, batch: Optional[BatchItem] = None) -> None:
		"""
		Refuse to start an execution that would break a ceiling.

		Raises:
			BudgetExceededError: run total or per-batch cap already met
		"""
		if self.total_spent >= self.budget.max_total:
			raise BudgetExceededError("max_total", self.total_spent, self.budget.max_total)

		if kind in (ExecutionKind.BATCH, ExecutionKind.HEALER) and batch is not None:
			if batch.cost_usd >= self.budget.max_per_batch:
				raise BudgetExceededError("max_per_batch", batch.cost_usd, self.budget.max_per_batch)

	def record(
		self,
		execution: WorkflowExecution,
		batch: Optional[BatchItem] = None,
		healer: bool = False,
	) -> float:
		"""
		Charge an execution's cost to the run.

		Returns:
			The newly charged amount (zero when nothing changed)
		"""
		previous = self.ledger.by_execution.get(execution.id, 0.0)
		delta = execution.cost_usd - previous
		if delta <= 0:
			return 0.0

		self.ledger.by_execution[execution.id] = execution.cost_usd
		self.orchestration.total_cost_usd += delta
		if batch is not None:
			batch.cost_usd += delta
		if healer:
			self.ledger.healing_cost_usd += delta

		logger.debug(
			f"Recorded ${delta:.4f} for execution {execution.id} "
			f"(run total ${self.orchestration.total_cost_usd:.4f})"
		)
		return delta

	def projected_healing_cost(self) -> float:
		"""Healing spent so far plus the mean cost of this run's earlier healers."""
		healers = [
			h for h in self.orchestration.executions.healers
			if h != self.orchestration.active_execution_id
		]
		spent = self.ledger.healing_cost_usd
		if not healers:
			return spent
		return spent + spent / len(healers)

	def healing_exhausted(self) -> bool:
		spent = self.ledger.healing_cost_usd
		if spent >= self.budget.healing_budget:
			return True
		return self.projected_healing_cost() > self.budget.healing_budget

	def decision_exhausted(self) -> bool:
		return self.ledger.decision_cost_usd >= self.budget.decision_budget

	def charge_decision(self, cost_usd: float) -> None:
		self.ledger.decision_cost_usd += max(cost_usd, 0.0)
		self.ledger.decision_count += 1
