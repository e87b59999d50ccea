"""Exception taxonomy shared by the supervisor and the orchestration engine."""

from enum import Enum


class FailureReason(str, Enum):
	"""Why a workflow execution ended in ``failed``."""
	PROCESS_EXIT = "process_exit"
	TIMEOUT = "timeout"
	OUTPUT_PARSE = "output_parse"
	AGENT_ERROR = "agent_error"
	SPAWN_ERROR = "spawn_error"
	LOST_PROCESS = "lost_process"


class OrchestratorError(Exception):
	"""Base class for errors surfaced to callers."""
	pass


class NotFoundError(OrchestratorError):
	"""Raised when an execution or orchestration id is unknown."""

	def __init__(self, kind: str, identifier: str):
		self.kind = kind
		self.identifier = identifier
		super().__init__(f"{kind} not found: {identifier}")


class ProjectNotFoundError(NotFoundError):
	"""Raised when a project id does not resolve to a known project."""

	def __init__(self, project_id: str):
		super().__init__("Project", project_id)


class InvalidTransitionError(OrchestratorError):
	"""Raised when an operation is attempted from a status that disallows it."""

	def __init__(self, operation: str, status: str, allowed: tuple[str, ...] = ()):
		self.operation = operation
		self.status = status
		self.allowed = allowed
		message = f"Cannot {operation} from status '{status}'"
		if allowed:
			message += f" (allowed: {', '.join(allowed)})"
		super().__init__(message)


class InvalidRecoveryActionError(OrchestratorError):
	"""Raised when a recovery action is not one of retry, skip, abort."""

	def __init__(self, action: str):
		self.action = action
		super().__init__(f"Invalid recovery action: {action!r}")


class BudgetExceededError(OrchestratorError):
	"""Raised when starting an execution would break a budget ceiling."""

	def __init__(self, limit: str, spent: float, cap: float):
		self.limit = limit
		self.spent = spent
		self.cap = cap
		super().__init__(f"Budget exceeded ({limit}): ${spent:.2f} of ${cap:.2f}")
