"""
Execution Models - Pydantic schemas for durable orchestration state.

Defines workflow executions (one agent invocation each) and orchestration
executions (one multi-phase run), plus the configuration, batch tracking,
cost ledger and decision log that hang off an orchestration.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import FailureReason


def now_iso() -> str:
	"""Timestamp with fixed precision so stored values sort lexically."""
	return datetime.now().isoformat(timespec="microseconds")


# =============================================================================
# Workflow executions
# =============================================================================

class WorkflowStatus(str, Enum):
	"""Status of a single agent invocation."""
	PENDING = "pending"
	RUNNING = "running"
	WAITING_FOR_INPUT = "waiting_for_input"
	COMPLETED = "completed"
	FAILED = "failed"
	CANCELLED = "cancelled"


TERMINAL_WORKFLOW_STATUSES = frozenset({
	WorkflowStatus.COMPLETED,
	WorkflowStatus.FAILED,
	WorkflowStatus.CANCELLED,
})


class QuestionOption(BaseModel):
	"""One selectable answer offered by the agent."""
	label: str
	description: str = ""


class AgentQuestion(BaseModel):
	"""A question the agent needs answered before it can continue."""
	question: str
	header: str = ""
	options: list[QuestionOption] = Field(default_factory=list)
	multi_select: bool = Field(default=False, alias="multiSelect")

	model_config = ConfigDict(populate_by_name=True)


class WorkflowExecution(BaseModel):
	"""One external-agent invocation, owned by the workflow supervisor."""
	id: str = Field(description="Unique execution identifier")
	project_id: str = Field(description="Project the agent runs against")
	skill: str = Field(description="Skill identifier passed to the agent")
	context: str = Field(default="", description="Free-text context passed with the skill")
	session_id: Optional[str] = Field(default=None, description="Agent session token used to resume")
	status: WorkflowStatus = Field(default=WorkflowStatus.PENDING)

	# Output
	output: str = Field(default="", description="Raw stdout of the last invocation")
	result: Optional[dict[str, Any]] = Field(default=None, description="Structured payload from the agent")
	message: Optional[str] = Field(default=None)
	questions: list[AgentQuestion] = Field(default_factory=list)
	answers: dict[str, Any] = Field(default_factory=dict)
	logs: list[str] = Field(default_factory=list)
	stderr: str = Field(default="")
	error: Optional[str] = Field(default=None)
	failure_reason: Optional[FailureReason] = Field(default=None)

	cost_usd: float = Field(default=0.0, ge=0)
	timeout_seconds: float = Field(default=4 * 60 * 60, gt=0)
	pid: Optional[int] = Field(default=None)

	# Timestamps
	started_at: str = Field(default_factory=now_iso)
	updated_at: str = Field(default_factory=now_iso)
	completed_at: Optional[str] = Field(default=None)
	cancelled_at: Optional[str] = Field(default=None)

	@property
	def is_terminal(self) -> bool:
		return self.status in TERMINAL_WORKFLOW_STATUSES

	def log(self, line: str) -> None:
		"""Append a timestamped line to the execution log."""
		self.logs.append(f"[{now_iso()}] {line}")

	def touch(self) -> None:
		self.updated_at = now_iso()


# =============================================================================
# Orchestration configuration
# =============================================================================

class Budget(BaseModel):
	"""Cost ceilings for one orchestration run, in USD."""
	model_config = ConfigDict(frozen=True)

	max_per_batch: float = Field(default=5.0, ge=0, description="Cap on one batch including its healers")
	max_total: float = Field(default=50.0, ge=0, description="Cap on the whole run")
	healing_budget: float = Field(default=2.0, ge=0, description="Cap on all healer executions")
	decision_budget: float = Field(default=0.5, ge=0, description="Cap on decision consultations")


class OrchestrationConfig(BaseModel):
	"""Immutable per-run settings."""
	model_config = ConfigDict(frozen=True)

	skip_design: bool = False
	skip_analyze: bool = False
	skip_verify: bool = False
	auto_merge: bool = False
	auto_heal_enabled: bool = True
	max_heal_attempts: int = Field(default=1, ge=0, le=5)
	batch_size_fallback: int = Field(default=15, ge=1, le=50)
	pause_between_batches: bool = False
	additional_context: str = ""
	budget: Budget = Field(default_factory=Budget)


# =============================================================================
# Orchestration state
# =============================================================================

class OrchestrationStatus(str, Enum):
	"""Status of a multi-phase run."""
	RUNNING = "running"
	PAUSED = "paused"
	WAITING_MERGE = "waiting_merge"
	NEEDS_ATTENTION = "needs_attention"
	FAILED = "failed"
	COMPLETE = "complete"
	CANCELLED = "cancelled"


TERMINAL_ORCHESTRATION_STATUSES = frozenset({
	OrchestrationStatus.FAILED,
	OrchestrationStatus.COMPLETE,
	OrchestrationStatus.CANCELLED,
})

ACTIVE_ORCHESTRATION_STATUSES = frozenset(
	set(OrchestrationStatus) - TERMINAL_ORCHESTRATION_STATUSES
)


class OrchestrationPhase(str, Enum):
	"""Phases in nominal order."""
	DESIGN = "design"
	ANALYZE = "analyze"
	IMPLEMENT = "implement"
	VERIFY = "verify"
	MERGE = "merge"
	COMPLETE = "complete"


class BatchStatus(str, Enum):
	"""Status of one implement batch."""
	PENDING = "pending"
	RUNNING = "running"
	COMPLETED = "completed"
	FAILED = "failed"
	HEALING = "healing"


class BatchItem(BaseModel):
	"""A contiguous group of implement tasks run as one execution."""
	index: int
	section: str = Field(description="Human-readable section label")
	task_ids: list[str] = Field(default_factory=list)
	status: BatchStatus = Field(default=BatchStatus.PENDING)
	heal_attempts: int = Field(default=0, ge=0)
	execution_ids: list[str] = Field(default_factory=list, description="Implement executions for this batch")
	healer_execution_ids: list[str] = Field(default_factory=list)
	cost_usd: float = Field(default=0.0, ge=0)
	forced: bool = Field(default=False, description="Completed by operator skip or decision proceed")
	started_at: Optional[str] = Field(default=None)
	completed_at: Optional[str] = Field(default=None)


class BatchTracking(BaseModel):
	"""Ordered batches for the implement phase."""
	total: int = 0
	current: int = 0
	items: list[BatchItem] = Field(default_factory=list)
	planned_at: Optional[str] = Field(default=None, description="Set once batches are computed")

	@property
	def is_planned(self) -> bool:
		return self.planned_at is not None

	@property
	def is_done(self) -> bool:
		return self.is_planned and self.current >= self.total

	def current_item(self) -> Optional[BatchItem]:
		if self.current < self.total:
			return self.items[self.current]
		return None

	def batch_for_execution(self, execution_id: str) -> Optional[BatchItem]:
		for item in self.items:
			if execution_id in item.execution_ids or execution_id in item.healer_execution_ids:
				return item
		return None


class LinkedExecutions(BaseModel):
	"""Phase to workflow-execution id links (never the reverse)."""
	design: Optional[str] = None
	analyze: Optional[str] = None
	implement: list[str] = Field(default_factory=list)
	verify: Optional[str] = None
	merge: Optional[str] = None
	healers: list[str] = Field(default_factory=list)
	superseded: list[str] = Field(
		default_factory=list,
		description="Earlier executions of a single-execution phase replaced by a retry",
	)

	def link_phase(self, phase: OrchestrationPhase, execution_id: str) -> None:
		if phase == OrchestrationPhase.IMPLEMENT:
			self.implement.append(execution_id)
			return
		previous = getattr(self, phase.value)
		if previous:
			self.superseded.append(previous)
		setattr(self, phase.value, execution_id)

	def all_ids(self) -> list[str]:
		ids = [self.design, self.analyze, *self.implement, self.verify, self.merge, *self.healers, *self.superseded]
		return [i for i in ids if i]


class DecisionLogEntry(BaseModel):
	"""One append-only entry in the orchestration's decision log."""
	timestamp: str = Field(default_factory=now_iso)
	decision: str
	reason: str
	data: dict[str, Any] = Field(default_factory=dict)


class AttentionTrigger(str, Enum):
	"""Why an orchestration moved to needs_attention."""
	HEAL_DISABLED = "heal_disabled"
	HEAL_EXHAUSTED = "heal_exhausted"
	HEAL_BUDGET = "heal_budget"
	DECISION_BUDGET = "decision_budget"
	BUDGET_EXCEEDED = "budget_exceeded"
	PHASE_FAILED = "phase_failed"
	ORACLE_ESCALATE = "oracle_escalate"
	NO_TASKS = "no_tasks"


class RecoveryAction(str, Enum):
	"""Operator actions accepted from needs_attention."""
	RETRY = "retry"
	SKIP = "skip"
	ABORT = "abort"


class RecoveryContext(BaseModel):
	"""What the operator needs to choose a recovery action."""
	trigger: AttentionTrigger
	issue: str
	options: list[RecoveryAction] = Field(default_factory=lambda: list(RecoveryAction))
	phase: OrchestrationPhase
	batch_index: Optional[int] = None
	failed_execution_id: Optional[str] = None


class CostLedger(BaseModel):
	"""Cost recorded per execution id so repeated observations never double count."""
	by_execution: dict[str, float] = Field(default_factory=dict)
	healing_cost_usd: float = 0.0
	decision_cost_usd: float = 0.0
	decision_count: int = 0


class OrchestrationExecution(BaseModel):
	"""One multi-phase run, owned and written only by the orchestration engine."""
	id: str = Field(description="Unique orchestration identifier")
	project_id: str
	status: OrchestrationStatus = Field(default=OrchestrationStatus.RUNNING)
	current_phase: OrchestrationPhase = Field(default=OrchestrationPhase.DESIGN)
	config: OrchestrationConfig = Field(default_factory=OrchestrationConfig)
	batches: BatchTracking = Field(default_factory=BatchTracking)
	executions: LinkedExecutions = Field(default_factory=LinkedExecutions)
	active_execution_id: Optional[str] = Field(default=None, description="The single non-terminal execution")

	decision_log: list[DecisionLogEntry] = Field(default_factory=list)
	total_cost_usd: float = Field(default=0.0, ge=0)
	ledger: CostLedger = Field(default_factory=CostLedger)

	error_message: Optional[str] = Field(default=None)
	recovery_context: Optional[RecoveryContext] = Field(default=None)

	# Timestamps
	started_at: str = Field(default_factory=now_iso)
	updated_at: str = Field(default_factory=now_iso)
	completed_at: Optional[str] = Field(default=None)

	@property
	def is_terminal(self) -> bool:
		return self.status in TERMINAL_ORCHESTRATION_STATUSES

	def log_decision(self, decision: str, reason: str, **data: Any) -> DecisionLogEntry:
		"""Append an entry to the decision log."""
		entry = DecisionLogEntry(decision=decision, reason=reason, data=data)
		self.decision_log.append(entry)
		return entry

	def touch(self) -> None:
		self.updated_at = now_iso()
