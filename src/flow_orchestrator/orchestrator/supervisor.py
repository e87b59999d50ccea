"""
Workflow Supervisor - owns the lifecycle of individual agent invocations.

Responsibilities:
- Spawn the agent for a skill and persist the execution record
- Resume a waiting execution with merged answers
- Cancel and time out executions (terminate, grace period, kill)
- Classify agent output and accumulate cost across resumes
- Reconcile records left running by a previous host process
"""

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from ..agent import AgentProcess, AgentRequest, AgentRunner, ProcessResult, parse_agent_output
from ..config import Config, get_config
from ..errors import FailureReason, InvalidTransitionError, NotFoundError, ProjectNotFoundError
from ..models import WorkflowExecution, WorkflowStatus, now_iso
from ..projects import ProjectResolver
from ..store import ExecutionStore

logger = logging.getLogger(__name__)

STDERR_TAIL = 2000


@dataclass
class ProcessHandle:
	"""A live agent process owned by the supervisor."""
	execution_id: str
	process: AgentProcess
	last_activity: float
	watcher: Optional[asyncio.Task] = None
	stopping: bool = False


@dataclass
class ProcessRegistry:
	"""Execution id to live process ownership map, injected into the supervisor."""
	_handles: dict[str, ProcessHandle] = field(default_factory=dict)

	def register(self, handle: ProcessHandle) -> None:
		self._handles[handle.execution_id] = handle

	def get(self, execution_id: str) -> Optional[ProcessHandle]:
		return self._handles.get(execution_id)

	def release(self, execution_id: str) -> Optional[ProcessHandle]:
		return self._handles.pop(execution_id, None)

	def owns(self, execution_id: str) -> bool:
		return execution_id in self._handles

	def ids(self) -> list[str]:
		return list(self._handles)

	def __len__(self) -> int:
		return len(self._handles)


class WorkflowSupervisor:
	"""
	Starts, resumes, cancels and times out agent invocations.

	Every status transition is written to the store before the updated
	record is returned. Completion is observed by one watcher task per
	execution that races the process result against the deadline.
	"""

	def __init__(
		self,
		store: ExecutionStore,
		projects: ProjectResolver,
		agent: AgentRunner,
		registry: Optional[ProcessRegistry] = None,
		config: Optional[Config] = None,
		clock: Callable[[], float] = time.monotonic,
		pid_alive: Optional[Callable[[int], bool]] = None,
	):
		"""
		Initialize the supervisor.

		Args:
			store: Durable execution store
			projects: Resolves project ids to working directories
			agent: Spawns agent processes
			registry: Ownership map of live processes
			config: Timeouts and grace periods
			clock: Monotonic clock used for activity tracking
			pid_alive: Checks whether a recorded pid still exists
		"""
		self.store = store
		self.projects = projects
		self.agent = agent
		self.registry = registry if registry is not None else ProcessRegistry()
		self.config = config or get_config()
		self._clock = clock
		self._pid_alive = pid_alive or process_alive
		self._locks: dict[str, asyncio.Lock] = {}

	def _lock(self, execution_id: str) -> asyncio.Lock:
		return self._locks.setdefault(execution_id, asyncio.Lock())

	# =========================================================================
	# Reads
	# =========================================================================

	async def find(self, execution_id: str) -> Optional[WorkflowExecution]:
		return await self.store.get_execution(execution_id)

	async def get(self, execution_id: str) -> WorkflowExecution:
		execution = await self.store.get_execution(execution_id)
		if execution is None:
			raise NotFoundError("Workflow execution", execution_id)
		return execution

	async def list_executions(self, project_id: Optional[str] = None) -> list[WorkflowExecution]:
		"""List executions, most recently updated first."""
		return await self.store.list_executions(project_id)

	async def idle_seconds(self, execution_id: str) -> float:
		"""Seconds since the last progress signal from an execution."""
		handle = self.registry.get(execution_id)
		if handle is not None:
			return max(self._clock() - handle.last_activity, 0.0)

		execution = await self.get(execution_id)
		updated = datetime.fromisoformat(execution.updated_at)
		return max((datetime.now() - updated).total_seconds(), 0.0)

	# =========================================================================
	# Transitions
	# =========================================================================

	async def start(
		self,
		project_id: str,
		skill: str,
		timeout_seconds: Optional[float] = None,
		resume_session_id: Optional[str] = None,
		context: str = "",
	) -> WorkflowExecution:
		"""
		Start a new agent invocation.

		Raises:
			ProjectNotFoundError: project id does not resolve
		"""
		project_path = self.projects.resolve(project_id)
		if project_path is None:
			raise ProjectNotFoundError(project_id)

		execution = WorkflowExecution(
			id=str(uuid.uuid4()),
			project_id=project_id,
			skill=skill,
			context=context,
			session_id=resume_session_id,
			timeout_seconds=timeout_seconds or self.config.default_timeout_seconds,
		)
		execution.log(f"Created for skill {skill}")

		async with self._lock(execution.id):
			await self.store.save_execution(execution)
			request = AgentRequest(
				skill=skill,
				project_path=project_path,
				context=context,
				resume_session_id=resume_session_id,
			)
			return await self._launch(execution, request)

	async def resume(self, execution_id: str, answers: dict[str, Any]) -> WorkflowExecution:
		"""
		Resume a waiting execution with answers merged over earlier ones.

		Raises:
			NotFoundError: unknown execution id
			InvalidTransitionError: execution is not waiting for input
		"""
		async with self._lock(execution_id):
			execution = await self.get(execution_id)
			if execution.status != WorkflowStatus.WAITING_FOR_INPUT:
				raise InvalidTransitionError("resume", execution.status.value, ("waiting_for_input",))

			project_path = self.projects.resolve(execution.project_id)
			if project_path is None:
				raise ProjectNotFoundError(execution.project_id)

			execution.answers = {**execution.answers, **answers}
			execution.questions = []
			execution.log(f"Resuming with answers for: {', '.join(answers) or '(none)'}")

			request = AgentRequest(
				skill=execution.skill,
				project_path=project_path,
				context=execution.context,
				answers=execution.answers,
				resume_session_id=execution.session_id,
				continuing=True,
			)
			return await self._launch(execution, request)

	async def cancel(self, execution_id: str) -> WorkflowExecution:
		"""
		Cancel a running or waiting execution.

		Raises:
			NotFoundError: unknown execution id
			InvalidTransitionError: execution is not running or waiting
		"""
		async with self._lock(execution_id):
			execution = await self.get(execution_id)
			if execution.status not in (WorkflowStatus.RUNNING, WorkflowStatus.WAITING_FOR_INPUT):
				raise InvalidTransitionError(
					"cancel", execution.status.value, ("running", "waiting_for_input")
				)

			if self.registry.owns(execution_id):
				await self._stop(execution_id)
			elif execution.pid:
				logger.warning(f"Execution {execution_id} pid {execution.pid} is not owned here; not signalling it")

			execution.status = WorkflowStatus.CANCELLED
			execution.pid = None
			execution.cancelled_at = now_iso()
			execution.completed_at = execution.cancelled_at
			execution.log("Cancelled")
			await self.store.save_execution(execution)
			logger.info(f"Cancelled execution {execution_id}")
			return execution

	async def reconcile(self) -> list[WorkflowExecution]:
		"""Fail records left pending/running without a backing process."""
		candidates = await self.store.list_executions(
			statuses=[WorkflowStatus.PENDING, WorkflowStatus.RUNNING]
		)
		reconciled = []
		for candidate in candidates:
			if self.registry.owns(candidate.id):
				continue
			lost = await self._mark_lost(candidate.id)
			if lost is not None:
				reconciled.append(lost)
			elif candidate.pid and not self.registry.owns(candidate.id):
				logger.warning(f"Execution {candidate.id} still runs as pid {candidate.pid} outside this process; left alone")
		return reconciled

	async def refresh(self, execution_id: str) -> WorkflowExecution:
		"""
		Current record, failed as a lost process first when nothing backs it.

		Raises:
			NotFoundError: unknown execution id
		"""
		lost = await self._mark_lost(execution_id)
		return lost if lost is not None else await self.get(execution_id)

	def owns(self, execution_id: str) -> bool:
		return self.registry.owns(execution_id)

	async def shutdown(self) -> None:
		"""Cancel every execution this supervisor still owns."""
		for execution_id in self.registry.ids():
			try:
				await self.cancel(execution_id)
			except InvalidTransitionError:
				# Record already terminal, possibly cancelled by another host process
				async with self._lock(execution_id):
					await self._stop(execution_id)

	# =========================================================================
	# Internals
	# =========================================================================

	async def _mark_lost(self, execution_id: str) -> Optional[WorkflowExecution]:
		"""Fail a pending/running record that no process backs; None when left alone."""
		async with self._lock(execution_id):
			execution = await self.get(execution_id)
			if execution.status not in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING):
				return None
			if self.registry.owns(execution_id):
				return None
			if execution.pid and self._pid_alive(execution.pid):
				return None
			self._fail(execution, FailureReason.LOST_PROCESS, "Lost process: no backing agent process")
			await self.store.save_execution(execution)
		logger.warning(f"Reconciled execution {execution_id} as lost process")
		return execution

	async def _launch(self, execution: WorkflowExecution, request: AgentRequest) -> WorkflowExecution:
		"""Spawn the agent for an execution; caller holds the execution lock."""
		try:
			process = await self.agent.spawn(request)
		except OSError as e:
			logger.error(f"Failed to spawn agent for {execution.id}: {e}")
			self._fail(execution, FailureReason.SPAWN_ERROR, f"Failed to spawn agent: {e}")
			await self.store.save_execution(execution)
			return execution

		execution.status = WorkflowStatus.RUNNING
		execution.pid = process.pid
		execution.log(f"Agent started (pid {process.pid})")
		await self.store.save_execution(execution)

		handle = ProcessHandle(
			execution_id=execution.id,
			process=process,
			last_activity=self._clock(),
		)
		self.registry.register(handle)
		handle.watcher = asyncio.create_task(self._watch(handle, execution.timeout_seconds))
		logger.info(f"Execution {execution.id} running skill {execution.skill}")
		return execution

	async def _watch(self, handle: ProcessHandle, timeout: float) -> None:
		"""Race the process result against the execution deadline."""

		def on_output() -> None:
			handle.last_activity = self._clock()

		try:
			result = await asyncio.wait_for(handle.process.communicate(on_output), timeout=timeout)
		except asyncio.TimeoutError:
			await self._on_timeout(handle, timeout)
			return
		await self._on_exit(handle, result)

	async def _on_timeout(self, handle: ProcessHandle, timeout: float) -> None:
		async with self._lock(handle.execution_id):
			if handle.stopping:
				return
			handle.stopping = True
			await self._terminate(handle.process)
			self.registry.release(handle.execution_id)

			execution = await self.get(handle.execution_id)
			if execution.status != WorkflowStatus.RUNNING:
				return
			self._fail(execution, FailureReason.TIMEOUT, f"Timed out after {timeout:.0f}s")
			await self.store.save_execution(execution)
			logger.warning(f"Execution {execution.id} timed out after {timeout:.0f}s")

	async def _on_exit(self, handle: ProcessHandle, result: ProcessResult) -> None:
		async with self._lock(handle.execution_id):
			if handle.stopping:
				return
			self.registry.release(handle.execution_id)

			execution = await self.get(handle.execution_id)
			if execution.status != WorkflowStatus.RUNNING:
				return

			self._apply_result(execution, result)
			await self.store.save_execution(execution)
			logger.info(
				f"Execution {execution.id} finished: {execution.status.value} "
				f"(cost ${execution.cost_usd:.4f})"
			)

	def _apply_result(self, execution: WorkflowExecution, result: ProcessResult) -> None:
		execution.output = result.stdout
		execution.stderr = result.stderr
		execution.pid = None

		outcome = parse_agent_output(result.stdout)
		if outcome.parsed:
			if outcome.session_id:
				execution.session_id = outcome.session_id
			execution.cost_usd += outcome.cost_usd

		if result.returncode != 0:
			tail = result.stderr[-STDERR_TAIL:].strip()
			message = f"Agent exited with code {result.returncode}"
			if tail:
				message += f": {tail}"
			self._fail(execution, FailureReason.PROCESS_EXIT, message)
			return

		if outcome.status == WorkflowStatus.FAILED:
			self._fail(execution, outcome.failure_reason or FailureReason.AGENT_ERROR, outcome.error or "Agent failed")
			return

		execution.status = outcome.status
		execution.result = outcome.result
		execution.message = outcome.message
		execution.questions = outcome.questions
		if outcome.status == WorkflowStatus.WAITING_FOR_INPUT:
			execution.log(f"Waiting for input ({len(outcome.questions)} questions)")
		else:
			execution.completed_at = now_iso()
			execution.log("Completed")

	async def _stop(self, execution_id: str) -> None:
		"""Stop the watcher and process for an execution; caller holds its lock."""
		handle = self.registry.release(execution_id)
		if handle is None:
			return
		handle.stopping = True
		if handle.watcher is not None and not handle.watcher.done():
			handle.watcher.cancel()
			try:
				await handle.watcher
			except asyncio.CancelledError:
				pass
		await self._terminate(handle.process)

	async def _terminate(self, process: AgentProcess) -> None:
		"""SIGTERM, wait out the grace period, then SIGKILL."""
		grace = self.config.cancel_grace_seconds
		process.terminate()
		try:
			await asyncio.wait_for(process.wait(), timeout=grace)
			return
		except asyncio.TimeoutError:
			logger.warning(f"Agent process {process.pid} ignored SIGTERM, killing")
		process.kill()
		try:
			await asyncio.wait_for(process.wait(), timeout=grace)
		except asyncio.TimeoutError:
			logger.error(f"Agent process {process.pid} did not exit after SIGKILL")

	def _fail(self, execution: WorkflowExecution, reason: FailureReason, message: str) -> None:
		execution.status = WorkflowStatus.FAILED
		execution.failure_reason = reason
		execution.error = message
		execution.pid = None
		execution.completed_at = now_iso()
		execution.log(f"Failed ({reason.value}): {message}")


def process_alive(pid: int) -> bool:
	"""Whether a process with this pid exists. Signal 0 checks without delivering anything."""
	try:
		os.kill(pid, 0)
	except ProcessLookupError:
		return False
	except PermissionError:
		return True
	return True
