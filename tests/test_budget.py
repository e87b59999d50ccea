"""
Tests for budget bookkeeping and the healing controller.

Tests:
- Delta-based cost recording
- Ceiling checks before starting executions
- Healing budget projection
- Heal eligibility and healer start
"""

import pytest

from flow_orchestrator.errors import BudgetExceededError
from flow_orchestrator.models import (
	AttentionTrigger,
	BatchItem,
	BatchStatus,
	Budget,
	OrchestrationConfig,
	OrchestrationExecution,
	WorkflowExecution,
	WorkflowStatus,
)
from flow_orchestrator.orchestrator.batches import create_batch_tracking
from flow_orchestrator.orchestrator.budget import BudgetTracker, ExecutionKind
from flow_orchestrator.orchestrator.healing import FailureContext, HealingController

from .conftest import PROJECT
from .helpers import HANG


def make_orchestration(**config) -> OrchestrationExecution:
	orchestration = OrchestrationExecution(
		id="orch-1",
		project_id=PROJECT,
		config=OrchestrationConfig(**config),
	)
	orchestration.batches = create_batch_tracking([
		BatchItem(index=0, section="Setup", task_ids=["T001", "T002"]),
	])
	return orchestration


def make_execution(execution_id: str, cost: float = 0.0, **fields) -> WorkflowExecution:
	return WorkflowExecution(id=execution_id, project_id=PROJECT, skill="flow.implement", cost_usd=cost, **fields)


class TestRecord:
	"""Tests for charging execution costs."""

	def test_repeated_observation_charges_once(self):
		orchestration = make_orchestration()
		tracker = BudgetTracker(orchestration)
		batch = orchestration.batches.items[0]
		execution = make_execution("wf-1", cost=0.4)

		assert tracker.record(execution, batch=batch) == pytest.approx(0.4)
		assert tracker.record(execution, batch=batch) == 0.0

		execution.cost_usd = 0.6
		assert tracker.record(execution, batch=batch) == pytest.approx(0.2)

		assert orchestration.total_cost_usd == pytest.approx(0.6)
		assert batch.cost_usd == pytest.approx(0.6)
		assert orchestration.ledger.by_execution == {"wf-1": 0.6}

	def test_healer_cost_counts_toward_healing(self):
		orchestration = make_orchestration()
		tracker = BudgetTracker(orchestration)

		tracker.record(make_execution("heal-1", cost=0.3), healer=True)

		assert orchestration.ledger.healing_cost_usd == pytest.approx(0.3)
		assert orchestration.total_cost_usd == pytest.approx(0.3)


class TestCheckCanStart:
	"""Tests for ceilings checked before spawning."""

	def test_under_budget(self):
		orchestration = make_orchestration()
		BudgetTracker(orchestration).check_can_start(ExecutionKind.PHASE)

	def test_total_cap_includes_decisions(self):
		orchestration = make_orchestration(budget=Budget(max_total=1.0))
		tracker = BudgetTracker(orchestration)
		tracker.record(make_execution("wf-1", cost=0.75))
		tracker.charge_decision(0.25)

		with pytest.raises(BudgetExceededError) as exc_info:
			tracker.check_can_start(ExecutionKind.PHASE)

		assert exc_info.value.limit == "max_total"
		assert exc_info.value.spent == pytest.approx(1.0)

	def test_per_batch_cap_only_for_batch_work(self):
		orchestration = make_orchestration(budget=Budget(max_per_batch=0.5))
		batch = orchestration.batches.items[0]
		tracker = BudgetTracker(orchestration)
		tracker.record(make_execution("wf-1", cost=0.5), batch=batch)

		tracker.check_can_start(ExecutionKind.PHASE, batch)
		with pytest.raises(BudgetExceededError, match="max_per_batch"):
			tracker.check_can_start(ExecutionKind.HEALER, batch)


class TestHealingBudget:
	"""Tests for healing budget projection."""

	def test_no_healers_projects_spent(self):
		orchestration = make_orchestration()
		assert BudgetTracker(orchestration).projected_healing_cost() == 0.0
		assert not BudgetTracker(orchestration).healing_exhausted()

	def test_projection_adds_mean_healer_cost(self):
		orchestration = make_orchestration(budget=Budget(healing_budget=1.0))
		tracker = BudgetTracker(orchestration)
		for healer_id, cost in (("heal-1", 0.2), ("heal-2", 0.4)):
			orchestration.executions.healers.append(healer_id)
			tracker.record(make_execution(healer_id, cost=cost), healer=True)

		assert tracker.projected_healing_cost() == pytest.approx(0.9)
		assert not tracker.healing_exhausted()

		orchestration.executions.healers.append("heal-3")
		tracker.record(make_execution("heal-3", cost=0.3), healer=True)
		assert tracker.healing_exhausted()

	def test_decision_budget(self):
		orchestration = make_orchestration(budget=Budget(decision_budget=0.5))
		tracker = BudgetTracker(orchestration)

		tracker.charge_decision(0.3)
		assert not tracker.decision_exhausted()
		tracker.charge_decision(0.2)

		assert tracker.decision_exhausted()
		assert orchestration.ledger.decision_count == 2


class TestHealingController:
	"""Tests for heal eligibility and healer start."""

	@pytest.mark.asyncio
	async def test_disabled(self, supervisor):
		orchestration = make_orchestration(auto_heal_enabled=False)
		decision = HealingController(supervisor).evaluate(orchestration, orchestration.batches.items[0])

		assert not decision.allowed
		assert decision.trigger == AttentionTrigger.HEAL_DISABLED

	@pytest.mark.asyncio
	async def test_attempts_exhausted(self, supervisor):
		orchestration = make_orchestration(max_heal_attempts=2)
		batch = orchestration.batches.items[0]
		batch.heal_attempts = 2

		decision = HealingController(supervisor).evaluate(orchestration, batch)

		assert decision.trigger == AttentionTrigger.HEAL_EXHAUSTED
		assert "2/2" in decision.reason

	@pytest.mark.asyncio
	async def test_zero_attempts_never_heals(self, supervisor):
		orchestration = make_orchestration(max_heal_attempts=0)
		decision = HealingController(supervisor).evaluate(orchestration, orchestration.batches.items[0])
		assert decision.trigger == AttentionTrigger.HEAL_EXHAUSTED

	@pytest.mark.asyncio
	async def test_allowed(self, supervisor):
		orchestration = make_orchestration()
		assert HealingController(supervisor).evaluate(orchestration, orchestration.batches.items[0]).allowed

	@pytest.mark.asyncio
	async def test_start_healer_links_execution(self, supervisor, agent):
		agent.push(HANG)
		orchestration = make_orchestration(additional_context="Keep it small")
		batch = orchestration.batches.items[0]
		batch.execution_ids.append("wf-1")
		failed = make_execution("wf-1", status=WorkflowStatus.FAILED, error="tests failing", stderr="assert 1 == 2")

		healer = await HealingController(supervisor, skill="custom.heal").start_healer(orchestration, batch, failed)

		assert healer.skill == "custom.heal"
		assert batch.heal_attempts == 1
		assert batch.status == BatchStatus.HEALING
		assert batch.healer_execution_ids == [healer.id]
		assert orchestration.executions.healers == [healer.id]
		prompt = agent.requests[0].context
		assert "**Heal attempt**: 1" in prompt
		assert "assert 1 == 2" in prompt
		assert "Keep it small" in prompt

	@pytest.mark.asyncio
	async def test_start_healer_refused_over_batch_cap(self, supervisor, agent):
		orchestration = make_orchestration(budget=Budget(max_per_batch=0.1))
		batch = orchestration.batches.items[0]
		batch.cost_usd = 0.1

		with pytest.raises(BudgetExceededError):
			await HealingController(supervisor).start_healer(orchestration, batch, make_execution("wf-1"))

		assert batch.heal_attempts == 0
		assert agent.requests == []


class TestFailureContext:

	def test_from_failure(self):
		batch = BatchItem(index=2, section="API", task_ids=["T9"], heal_attempts=1, execution_ids=["wf-1"])
		failed = make_execution("wf-1", status=WorkflowStatus.FAILED, session_id="s-1")

		context = FailureContext.from_failure(batch, failed)

		assert context.error == "Execution ended failed"
		assert context.session_id == "s-1"
		assert context.previous_executions == ["wf-1"]
		assert context.to_prompt().startswith("# Auto-Heal Request")
