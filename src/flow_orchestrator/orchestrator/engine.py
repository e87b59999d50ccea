"""
Orchestration Engine - the phase and batch state machine.

Drives one multi-phase run through design, analyze, implement, verify
and merge by starting workflow executions through the supervisor and
polling them. Implement is split into batches that run strictly one at
a time; failed batches go through the healing controller. Ambiguous
executions are referred to a decision oracle when one is configured.

Each orchestration is serialized by its own lock, and every change is
persisted before the updated record is returned.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Optional

from ..config import Config, get_config
from ..errors import (
	BudgetExceededError,
	InvalidRecoveryActionError,
	InvalidTransitionError,
	NotFoundError,
	OrchestratorError,
	ProjectNotFoundError,
)
from ..models import (
	ACTIVE_ORCHESTRATION_STATUSES,
	AttentionTrigger,
	BatchItem,
	BatchStatus,
	OrchestrationConfig,
	OrchestrationExecution,
	OrchestrationPhase,
	OrchestrationStatus,
	RecoveryAction,
	RecoveryContext,
	WorkflowExecution,
	WorkflowStatus,
	now_iso,
)
from ..projects import ProjectResolver
from ..store import ExecutionStore
from .batches import (
	TaskInventory,
	TaskSource,
	batch_context,
	create_batch_tracking,
	describe_batch_plan,
	plan_batches,
)
from .budget import BudgetTracker, ExecutionKind
from .decisions import DecisionAction, DecisionContext, DecisionOracle, DecisionTrigger, DecisionVerdict
from .healing import HealingController
from .phases import PhaseSkills, first_phase, next_phase
from .supervisor import WorkflowSupervisor

logger = logging.getLogger(__name__)

OUTPUT_EXCERPT = 2000
RECENT_DECISIONS = 10


class OrchestrationEngine:
	"""
	Runs orchestrations on top of a workflow supervisor.

	Usage:
		engine = OrchestrationEngine(store, supervisor, projects, task_source=source)
		orchestration = await engine.start("my-project", OrchestrationConfig(auto_merge=True))
		orchestration = await engine.run(orchestration.id)
	"""

	def __init__(
		self,
		store: ExecutionStore,
		supervisor: WorkflowSupervisor,
		projects: ProjectResolver,
		task_source: Optional[TaskSource] = None,
		oracle: Optional[DecisionOracle] = None,
		skills: Optional[PhaseSkills] = None,
		config: Optional[Config] = None,
		clock: Callable[[], float] = time.monotonic,
	):
		"""
		Initialize the engine.

		Args:
			store: Durable store shared with the supervisor
			supervisor: Owns the agent invocations
			projects: Resolves project ids
			task_source: Supplies incomplete tasks when implement begins
			oracle: Consulted on ambiguous executions; without one the engine waits
			skills: Phase to skill map
			config: Polling interval and staleness threshold
			clock: Monotonic clock used to throttle oracle consultations
		"""
		self.store = store
		self.supervisor = supervisor
		self.projects = projects
		self.task_source = task_source
		self.oracle = oracle
		self.config = config or get_config()
		self.skills = skills or PhaseSkills(heal=self.config.healer_skill)
		self.healing = HealingController(supervisor, skill=self.skills.heal)
		self.poll_interval = self.config.poll_interval_seconds
		self.stale_after_seconds = self.config.stale_after_seconds
		self._clock = clock
		self._locks: dict[str, asyncio.Lock] = {}
		self._start_lock = asyncio.Lock()
		self._last_consulted: dict[str, float] = {}

	def _lock(self, orchestration_id: str) -> asyncio.Lock:
		return self._locks.setdefault(orchestration_id, asyncio.Lock())

	# =========================================================================
	# Reads
	# =========================================================================

	async def get(self, orchestration_id: str) -> OrchestrationExecution:
		orchestration = await self.store.get_orchestration(orchestration_id)
		if orchestration is None:
			raise NotFoundError("Orchestration", orchestration_id)
		return orchestration

	async def list_orchestrations(self, project_id: Optional[str] = None) -> list[OrchestrationExecution]:
		"""List orchestrations, most recently updated first."""
		return await self.store.list_orchestrations(project_id)

	async def active_execution(self, orchestration_id: str) -> Optional[WorkflowExecution]:
		orchestration = await self.get(orchestration_id)
		if orchestration.active_execution_id is None:
			return None
		return await self.supervisor.find(orchestration.active_execution_id)

	# =========================================================================
	# Operations
	# =========================================================================

	async def start(
		self,
		project_id: str,
		config: Optional[OrchestrationConfig] = None,
		batch_plan: Optional[TaskInventory] = None,
	) -> OrchestrationExecution:
		"""
		Start a new orchestration and its first unit of work.

		A supplied batch_plan is batched up front and takes the place of the
		task source when implement begins.

		Raises:
			ProjectNotFoundError: project id does not resolve
			InvalidTransitionError: project already has an active orchestration
		"""
		config = config or OrchestrationConfig()
		if self.projects.resolve(project_id) is None:
			raise ProjectNotFoundError(project_id)

		async with self._start_lock:
			active = await self.store.list_orchestrations(project_id, statuses=ACTIVE_ORCHESTRATION_STATUSES)
			if active:
				raise InvalidTransitionError(
					f"start an orchestration while {active[0].id} is active", active[0].status.value
				)

			phase, skipped = first_phase(config)
			orchestration = OrchestrationExecution(
				id=str(uuid.uuid4()),
				project_id=project_id,
				config=config,
				current_phase=phase,
			)
			for bypassed in skipped:
				orchestration.log_decision(
					"skip", f"{bypassed.value} skipped by configuration", phase=bypassed.value
				)
			orchestration.log_decision("start", f"Starting at {phase.value}", phase=phase.value)
			if batch_plan is not None:
				items = plan_batches(batch_plan, config.batch_size_fallback)
				if items:
					self._set_batches(orchestration, items)
			await self.store.save_orchestration(orchestration)
			logger.info(f"Started orchestration {orchestration.id} for {project_id} at {phase.value}")

		return await self.tick(orchestration.id)

	async def tick(self, orchestration_id: str) -> OrchestrationExecution:
		"""One polling step: observe the active execution and advance if possible."""
		async with self._lock(orchestration_id):
			orchestration = await self.get(orchestration_id)
			if orchestration.status != OrchestrationStatus.RUNNING:
				return orchestration
			before = orchestration.model_dump_json()
			await self._step(orchestration)
			if orchestration.model_dump_json() != before:
				await self.store.save_orchestration(orchestration)
			return orchestration

	async def run(self, orchestration_id: str, poll_interval: Optional[float] = None) -> OrchestrationExecution:
		"""Poll until the orchestration is terminal or needs an operator."""
		interval = self.poll_interval if poll_interval is None else poll_interval
		while True:
			orchestration = await self.tick(orchestration_id)
			if orchestration.status != OrchestrationStatus.RUNNING:
				return orchestration
			if orchestration.active_execution_id:
				execution = await self.supervisor.find(orchestration.active_execution_id)
				if execution is not None and execution.status == WorkflowStatus.WAITING_FOR_INPUT:
					return orchestration
			await asyncio.sleep(interval)

	async def answer(self, orchestration_id: str, answers: dict[str, Any]) -> OrchestrationExecution:
		"""
		Answer the questions of the active execution.

		Raises:
			InvalidTransitionError: no active execution is waiting for input
		"""
		async with self._lock(orchestration_id):
			orchestration = await self.get(orchestration_id)
			execution = None
			if orchestration.status == OrchestrationStatus.RUNNING and orchestration.active_execution_id:
				execution = await self.supervisor.find(orchestration.active_execution_id)
			if execution is None or execution.status != WorkflowStatus.WAITING_FOR_INPUT:
				state = execution.status.value if execution else orchestration.status.value
				raise InvalidTransitionError("answer", state, ("waiting_for_input",))

			self._record_cost(orchestration, execution)
			batch = self._current_batch(orchestration)
			if execution.id in orchestration.executions.healers:
				kind = ExecutionKind.HEALER
			elif batch is not None:
				kind = ExecutionKind.BATCH
			else:
				kind = ExecutionKind.PHASE
			try:
				BudgetTracker(orchestration).check_can_start(kind, batch)
			except BudgetExceededError as e:
				await self._stop_active(orchestration)
				self._needs_attention(
					orchestration,
					AttentionTrigger.BUDGET_EXCEEDED,
					str(e),
					failed_execution_id=execution.id,
				)
				return await self.store.save_orchestration(orchestration)

			await self.supervisor.resume(execution.id, answers)
			orchestration.log_decision(
				"answered",
				f"Resumed {execution.skill} with {len(answers)} answers",
				execution_id=execution.id,
				keys=sorted(answers),
			)
			return await self.store.save_orchestration(orchestration)

	async def pause(self, orchestration_id: str) -> OrchestrationExecution:
		"""
		Pause a running orchestration, cancelling its in-flight execution.

		Raises:
			InvalidTransitionError: orchestration is not running
		"""
		async with self._lock(orchestration_id):
			orchestration = await self.get(orchestration_id)
			if orchestration.status != OrchestrationStatus.RUNNING:
				raise InvalidTransitionError("pause", orchestration.status.value, ("running",))

			await self._stop_active(orchestration)
			batch = self._current_batch(orchestration)
			if batch is not None and batch.status in (BatchStatus.RUNNING, BatchStatus.HEALING):
				batch.status = BatchStatus.PENDING

			orchestration.status = OrchestrationStatus.PAUSED
			orchestration.log_decision("pause", "Paused by operator", phase=orchestration.current_phase.value)
			logger.info(f"Paused orchestration {orchestration_id}")
			return await self.store.save_orchestration(orchestration)

	async def resume(self, orchestration_id: str) -> OrchestrationExecution:
		"""
		Resume a paused orchestration with a fresh execution of the current unit.

		Raises:
			InvalidTransitionError: orchestration is not paused
		"""
		async with self._lock(orchestration_id):
			orchestration = await self.get(orchestration_id)
			if orchestration.status != OrchestrationStatus.PAUSED:
				raise InvalidTransitionError("resume", orchestration.status.value, ("paused",))

			orchestration.status = OrchestrationStatus.RUNNING
			orchestration.log_decision("resume", "Resumed by operator", phase=orchestration.current_phase.value)
			await self._start_current_unit(
				orchestration,
				merge_approved=orchestration.current_phase == OrchestrationPhase.MERGE,
			)
			logger.info(f"Resumed orchestration {orchestration_id}")
			return await self.store.save_orchestration(orchestration)

	async def cancel(self, orchestration_id: str) -> OrchestrationExecution:
		"""
		Cancel an orchestration permanently.

		Raises:
			InvalidTransitionError: orchestration is already terminal
		"""
		async with self._lock(orchestration_id):
			orchestration = await self.get(orchestration_id)
			if orchestration.is_terminal:
				raise InvalidTransitionError(
					"cancel", orchestration.status.value,
					tuple(s.value for s in ACTIVE_ORCHESTRATION_STATUSES),
				)

			await self._stop_active(orchestration)
			batch = self._current_batch(orchestration)
			if batch is not None and batch.status in (BatchStatus.RUNNING, BatchStatus.HEALING):
				batch.status = BatchStatus.PENDING

			orchestration.status = OrchestrationStatus.CANCELLED
			orchestration.completed_at = now_iso()
			orchestration.log_decision("cancel", "Cancelled by operator", phase=orchestration.current_phase.value)
			logger.info(f"Cancelled orchestration {orchestration_id}")
			return await self.store.save_orchestration(orchestration)

	async def trigger_merge(self, orchestration_id: str) -> OrchestrationExecution:
		"""
		Start the merge skill for an orchestration waiting on it.

		Raises:
			InvalidTransitionError: orchestration is not waiting_merge
		"""
		async with self._lock(orchestration_id):
			orchestration = await self.get(orchestration_id)
			if orchestration.status != OrchestrationStatus.WAITING_MERGE:
				raise InvalidTransitionError("trigger merge", orchestration.status.value, ("waiting_merge",))

			orchestration.status = OrchestrationStatus.RUNNING
			orchestration.log_decision("merge_triggered", "Merge triggered by operator", phase="merge")
			await self._start_current_unit(orchestration, merge_approved=True)
			return await self.store.save_orchestration(orchestration)

	async def recover(self, orchestration_id: str, action: str | RecoveryAction) -> OrchestrationExecution:
		"""
		Apply an operator recovery action to an orchestration needing attention.

		Raises:
			InvalidRecoveryActionError: action is not retry, skip or abort
			InvalidTransitionError: orchestration is not needs_attention
		"""
		try:
			action = RecoveryAction(action)
		except ValueError:
			raise InvalidRecoveryActionError(str(action))

		async with self._lock(orchestration_id):
			orchestration = await self.get(orchestration_id)
			if orchestration.status != OrchestrationStatus.NEEDS_ATTENTION:
				raise InvalidTransitionError(
					f"recover ({action.value})", orchestration.status.value, ("needs_attention",)
				)

			recovery = orchestration.recovery_context
			orchestration.recovery_context = None
			orchestration.log_decision(
				"recover",
				f"Operator chose {action.value}",
				action=action.value,
				trigger=recovery.trigger.value if recovery else None,
			)

			if action == RecoveryAction.ABORT:
				orchestration.status = OrchestrationStatus.FAILED
				orchestration.completed_at = now_iso()
				logger.info(f"Orchestration {orchestration_id} aborted by operator")
				return await self.store.save_orchestration(orchestration)

			orchestration.status = OrchestrationStatus.RUNNING
			batch = self._current_batch(orchestration)

			if action == RecoveryAction.RETRY:
				if batch is not None:
					batch.status = BatchStatus.PENDING
					if recovery is not None and recovery.trigger == AttentionTrigger.DECISION_BUDGET:
						batch.heal_attempts = 0
				await self._start_current_unit(
					orchestration,
					merge_approved=orchestration.current_phase == OrchestrationPhase.MERGE,
				)
			else:
				if batch is not None:
					self._complete_batch(orchestration, batch, forced=True)
				else:
					orchestration.log_decision(
						"phase_skipped",
						f"{orchestration.current_phase.value} skipped by operator",
						phase=orchestration.current_phase.value,
					)
					self._advance_phase(orchestration)
				if orchestration.status == OrchestrationStatus.RUNNING:
					await self._start_current_unit(orchestration)

			return await self.store.save_orchestration(orchestration)

	async def reconcile(self) -> list[WorkflowExecution]:
		"""Fail executions lost by a previous host, then let running orchestrations react."""
		lost = await self.supervisor.reconcile()
		running = await self.store.list_orchestrations(statuses=[OrchestrationStatus.RUNNING])
		for orchestration in running:
			await self.tick(orchestration.id)
		if lost:
			logger.warning(f"Reconciled {len(lost)} lost executions across {len(running)} running orchestrations")
		return lost

	# =========================================================================
	# State machine
	# =========================================================================

	async def _step(self, orchestration: OrchestrationExecution) -> None:
		if orchestration.active_execution_id:
			execution = await self.supervisor.find(orchestration.active_execution_id)
			if execution is None:
				missing = orchestration.active_execution_id
				orchestration.active_execution_id = None
				self._needs_attention(
					orchestration,
					AttentionTrigger.PHASE_FAILED,
					f"Execution record {missing} is missing",
					failed_execution_id=missing,
				)
				return
			await self._observe(orchestration, execution)

		if orchestration.status == OrchestrationStatus.RUNNING and orchestration.active_execution_id is None:
			await self._start_current_unit(orchestration)

	async def _observe(self, orchestration: OrchestrationExecution, execution: WorkflowExecution) -> None:
		if execution.status in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING) and not self.supervisor.owns(execution.id):
			# Left behind by another host process
			execution = await self.supervisor.refresh(execution.id)
		self._record_cost(orchestration, execution)
		status = execution.status

		if status in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING):
			await self._check_progress(orchestration, execution)
		elif status == WorkflowStatus.WAITING_FOR_INPUT:
			self._note_waiting(orchestration, execution)
		elif status == WorkflowStatus.COMPLETED:
			if execution.result is None and self.oracle is not None:
				verdict = await self._consult(orchestration, execution, DecisionTrigger.UNCLEAR_OUTPUT)
				if verdict is not None:
					await self._apply_verdict(orchestration, execution, verdict)
				return
			await self._unit_succeeded(orchestration, execution)
		else:
			await self._unit_failed(orchestration, execution)

	def _note_waiting(self, orchestration: OrchestrationExecution, execution: WorkflowExecution) -> None:
		"""Log the first observation of a waiting execution; answers come from the caller."""
		for entry in reversed(orchestration.decision_log):
			if entry.data.get("execution_id") == execution.id:
				if entry.decision == "awaiting_input":
					return
				break
		orchestration.log_decision(
			"awaiting_input",
			f"{execution.skill} is waiting for {len(execution.questions)} answers",
			execution_id=execution.id,
			phase=orchestration.current_phase.value,
		)

	async def _check_progress(self, orchestration: OrchestrationExecution, execution: WorkflowExecution) -> None:
		"""Consult the oracle when a running execution has been silent too long."""
		if self.oracle is None:
			return
		idle = await self.supervisor.idle_seconds(execution.id)
		if idle < self.stale_after_seconds:
			return
		now = self._clock()
		last = self._last_consulted.get(execution.id)
		if last is not None and now - last < self.stale_after_seconds:
			return
		self._last_consulted[execution.id] = now

		verdict = await self._consult(orchestration, execution, DecisionTrigger.NO_PROGRESS, idle)
		if verdict is not None:
			await self._apply_verdict(orchestration, execution, verdict)

	async def _consult(
		self,
		orchestration: OrchestrationExecution,
		execution: WorkflowExecution,
		trigger: DecisionTrigger,
		idle: float = 0.0,
	) -> Optional[DecisionVerdict]:
		"""Ask the oracle, or escalate when the decision budget is spent."""
		tracker = BudgetTracker(orchestration)
		if tracker.decision_exhausted():
			await self._stop_active(orchestration)
			self._needs_attention(
				orchestration,
				AttentionTrigger.DECISION_BUDGET,
				f"Decision budget exhausted (${orchestration.ledger.decision_cost_usd:.2f}"
				f" of ${orchestration.config.budget.decision_budget:.2f}) while {trigger.value}",
				failed_execution_id=execution.id,
			)
			return None

		batch = self._current_batch(orchestration)
		context = DecisionContext(
			orchestration_id=orchestration.id,
			project_id=orchestration.project_id,
			phase=orchestration.current_phase.value,
			batch_index=batch.index if batch else None,
			execution_id=execution.id,
			execution_status=execution.status.value,
			idle_seconds=idle,
			trigger=trigger,
			output_excerpt=execution.output[-OUTPUT_EXCERPT:],
			recent_decisions=[e.model_dump() for e in orchestration.decision_log[-RECENT_DECISIONS:]],
		)
		try:
			verdict = await self.oracle.decide(context)
		except Exception as e:
			logger.error(f"Decision oracle failed for {orchestration.id}: {e}")
			verdict = DecisionVerdict(action=DecisionAction.ESCALATE, reason=f"Decision oracle failed: {e}")

		tracker.charge_decision(verdict.cost_usd)
		orchestration.log_decision(
			"oracle",
			verdict.reason or f"Oracle chose {verdict.action.value}",
			action=verdict.action.value,
			trigger=trigger.value,
			execution_id=execution.id,
			cost_usd=verdict.cost_usd,
		)
		return verdict

	async def _apply_verdict(
		self,
		orchestration: OrchestrationExecution,
		execution: WorkflowExecution,
		verdict: DecisionVerdict,
	) -> None:
		action = verdict.action
		if action == DecisionAction.WAIT and not execution.is_terminal:
			return

		if action in (DecisionAction.WAIT, DecisionAction.PROCEED):
			forced = not execution.is_terminal
			if forced:
				await self._stop_active(orchestration)
			await self._unit_succeeded(orchestration, execution, forced=forced)
			return

		if action == DecisionAction.HEAL and orchestration.current_phase == OrchestrationPhase.IMPLEMENT:
			if not execution.is_terminal:
				await self._stop_active(orchestration)
				execution = await self.supervisor.get(execution.id)
			await self._unit_failed(orchestration, execution)
			return

		await self._stop_active(orchestration)
		reason = verdict.reason or "Decision oracle escalated"
		if action == DecisionAction.HEAL:
			reason = f"Heal requested outside implement: {reason}"
		self._needs_attention(
			orchestration, AttentionTrigger.ORACLE_ESCALATE, reason, failed_execution_id=execution.id
		)

	async def _unit_succeeded(
		self,
		orchestration: OrchestrationExecution,
		execution: WorkflowExecution,
		forced: bool = False,
	) -> None:
		orchestration.active_execution_id = None
		phase = orchestration.current_phase

		if phase == OrchestrationPhase.IMPLEMENT:
			batch = self._current_batch(orchestration)
			if batch is not None:
				self._complete_batch(orchestration, batch, forced=forced, execution_id=execution.id)
			return

		orchestration.log_decision(
			"phase_completed",
			f"{phase.value} completed" + (" (forced)" if forced else ""),
			phase=phase.value,
			execution_id=execution.id,
		)
		self._advance_phase(orchestration)

	async def _unit_failed(self, orchestration: OrchestrationExecution, execution: WorkflowExecution) -> None:
		orchestration.active_execution_id = None
		error = execution.error or f"{execution.skill} execution {execution.status.value}"
		phase = orchestration.current_phase
		batch = self._current_batch(orchestration)

		if phase != OrchestrationPhase.IMPLEMENT or batch is None:
			self._needs_attention(
				orchestration,
				AttentionTrigger.PHASE_FAILED,
				f"{phase.value} failed: {error}",
				failed_execution_id=execution.id,
			)
			return

		batch.status = BatchStatus.FAILED
		orchestration.log_decision(
			"batch_failed",
			f"Batch {batch.index + 1}/{orchestration.batches.total} ({batch.section}) failed: {error}",
			batch_index=batch.index,
			execution_id=execution.id,
		)

		decision = self.healing.evaluate(orchestration, batch)
		if not decision.allowed:
			self._needs_attention(
				orchestration,
				decision.trigger,
				f"{decision.reason}; batch {batch.index + 1} ({batch.section}) failed: {error}",
				failed_execution_id=execution.id,
			)
			return

		try:
			healer = await self.healing.start_healer(orchestration, batch, execution)
		except BudgetExceededError as e:
			batch.status = BatchStatus.FAILED
			self._needs_attention(orchestration, AttentionTrigger.BUDGET_EXCEEDED, str(e), failed_execution_id=execution.id)
			return
		except OrchestratorError as e:
			batch.status = BatchStatus.FAILED
			self._needs_attention(orchestration, AttentionTrigger.PHASE_FAILED, str(e), failed_execution_id=execution.id)
			return

		orchestration.active_execution_id = healer.id
		orchestration.log_decision(
			"heal",
			f"Healing batch {batch.index + 1} (attempt {batch.heal_attempts}/{orchestration.config.max_heal_attempts})",
			batch_index=batch.index,
			execution_id=healer.id,
			failed_execution_id=execution.id,
		)

	async def _start_current_unit(self, orchestration: OrchestrationExecution, merge_approved: bool = False) -> None:
		"""Start the execution for the current phase or batch, if any."""
		while orchestration.status == OrchestrationStatus.RUNNING and orchestration.active_execution_id is None:
			phase = orchestration.current_phase

			if phase == OrchestrationPhase.COMPLETE:
				self._finish(orchestration)
				return

			if phase == OrchestrationPhase.MERGE and not (orchestration.config.auto_merge or merge_approved):
				orchestration.status = OrchestrationStatus.WAITING_MERGE
				orchestration.log_decision("waiting_merge", "Waiting for merge trigger", phase=phase.value)
				return

			batch: Optional[BatchItem] = None
			kind = ExecutionKind.PHASE
			context = orchestration.config.additional_context

			if phase == OrchestrationPhase.IMPLEMENT:
				if not orchestration.batches.is_planned:
					planned = await self._plan_batches(orchestration)
					if not planned:
						return
				batch = self._current_batch(orchestration)
				if batch is None:
					orchestration.log_decision("phase_completed", "All batches completed", phase=phase.value)
					self._advance_phase(orchestration)
					continue
				kind = ExecutionKind.BATCH
				context = batch_context(batch, orchestration.config.additional_context)

			try:
				BudgetTracker(orchestration).check_can_start(kind, batch)
			except BudgetExceededError as e:
				self._needs_attention(
					orchestration,
					AttentionTrigger.BUDGET_EXCEEDED,
					str(e),
				)
				return

			skill = self.skills.for_phase(phase)
			try:
				execution = await self.supervisor.start(orchestration.project_id, skill, context=context)
			except ProjectNotFoundError as e:
				self._needs_attention(orchestration, AttentionTrigger.PHASE_FAILED, str(e))
				return

			orchestration.active_execution_id = execution.id
			if batch is not None:
				batch.status = BatchStatus.RUNNING
				batch.started_at = now_iso()
				batch.execution_ids.append(execution.id)
			orchestration.executions.link_phase(phase, execution.id)
			orchestration.log_decision(
				"execution_started",
				f"Started {skill}" + (f" for batch {batch.index + 1} ({batch.section})" if batch else ""),
				phase=phase.value,
				skill=skill,
				execution_id=execution.id,
				batch_index=batch.index if batch else None,
			)
			return

	async def _plan_batches(self, orchestration: OrchestrationExecution) -> bool:
		"""Compute implement batches once; escalate when there is nothing to do."""
		items = []
		if self.task_source is not None:
			inventory = await self.task_source.inventory(
				orchestration.project_id, self.projects.resolve(orchestration.project_id)
			)
			items = plan_batches(inventory, orchestration.config.batch_size_fallback)

		if not items:
			self._needs_attention(
				orchestration,
				AttentionTrigger.NO_TASKS,
				"No incomplete tasks found for the implement phase",
			)
			return False

		self._set_batches(orchestration, items)
		return True

	def _set_batches(self, orchestration: OrchestrationExecution, items: list[BatchItem]) -> None:
		orchestration.batches = create_batch_tracking(items)
		orchestration.log_decision(
			"batches_planned",
			describe_batch_plan(orchestration.batches),
			total=len(items),
		)

	def _complete_batch(
		self,
		orchestration: OrchestrationExecution,
		batch: BatchItem,
		forced: bool = False,
		execution_id: Optional[str] = None,
	) -> None:
		batch.status = BatchStatus.COMPLETED
		batch.forced = forced
		batch.completed_at = now_iso()
		tracking = orchestration.batches
		orchestration.log_decision(
			"batch_completed",
			f"Batch {batch.index + 1}/{tracking.total} ({batch.section}) completed" + (" (forced)" if forced else ""),
			batch_index=batch.index,
			execution_id=execution_id,
		)
		tracking.current = min(tracking.current + 1, tracking.total)

		if tracking.is_done:
			orchestration.log_decision("phase_completed", "All batches completed", phase="implement")
			self._advance_phase(orchestration)
		elif orchestration.config.pause_between_batches:
			orchestration.status = OrchestrationStatus.PAUSED
			orchestration.log_decision(
				"pause",
				f"Pausing before batch {tracking.current + 1}/{tracking.total}",
				batch_index=tracking.current,
			)

	def _advance_phase(self, orchestration: OrchestrationExecution) -> None:
		phase, skipped = next_phase(orchestration.current_phase, orchestration.config)
		for bypassed in skipped:
			orchestration.log_decision("skip", f"{bypassed.value} skipped by configuration", phase=bypassed.value)
		orchestration.current_phase = phase
		if phase == OrchestrationPhase.COMPLETE:
			self._finish(orchestration)

	def _finish(self, orchestration: OrchestrationExecution) -> None:
		orchestration.current_phase = OrchestrationPhase.COMPLETE
		orchestration.status = OrchestrationStatus.COMPLETE
		orchestration.completed_at = now_iso()
		orchestration.log_decision("complete", f"Orchestration complete (${orchestration.total_cost_usd:.2f})")
		logger.info(f"Orchestration {orchestration.id} complete")

	def _needs_attention(
		self,
		orchestration: OrchestrationExecution,
		trigger: AttentionTrigger,
		issue: str,
		failed_execution_id: Optional[str] = None,
	) -> None:
		batch = self._current_batch(orchestration)
		if batch is not None and batch.status in (BatchStatus.RUNNING, BatchStatus.HEALING):
			batch.status = BatchStatus.FAILED
		orchestration.status = OrchestrationStatus.NEEDS_ATTENTION
		orchestration.error_message = issue
		orchestration.recovery_context = RecoveryContext(
			trigger=trigger,
			issue=issue,
			phase=orchestration.current_phase,
			batch_index=batch.index if batch else None,
			failed_execution_id=failed_execution_id,
		)
		orchestration.log_decision("needs_attention", issue, trigger=trigger.value)
		logger.warning(f"Orchestration {orchestration.id} needs attention ({trigger.value}): {issue}")

	async def _stop_active(self, orchestration: OrchestrationExecution) -> None:
		"""Cancel the in-flight execution, if any, and charge what it cost."""
		execution_id = orchestration.active_execution_id
		if execution_id is None:
			return
		orchestration.active_execution_id = None
		self._last_consulted.pop(execution_id, None)
		try:
			execution = await self.supervisor.cancel(execution_id)
		except InvalidTransitionError:
			# Already terminal
			execution = await self.supervisor.find(execution_id)
		if execution is not None:
			self._record_cost(orchestration, execution)

	def _record_cost(self, orchestration: OrchestrationExecution, execution: WorkflowExecution) -> None:
		batch = orchestration.batches.batch_for_execution(execution.id)
		healer = execution.id in orchestration.executions.healers
		BudgetTracker(orchestration).record(execution, batch=batch, healer=healer)

	def _current_batch(self, orchestration: OrchestrationExecution) -> Optional[BatchItem]:
		if orchestration.current_phase != OrchestrationPhase.IMPLEMENT:
			return None
		return orchestration.batches.current_item()
