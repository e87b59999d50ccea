"""Shared test fixtures and helpers for flow-orchestrator tests."""

import asyncio
import json
from pathlib import Path
from typing import Callable, Optional

from flow_orchestrator.agent import AgentRequest, ProcessResult
from flow_orchestrator.models import WorkflowStatus

# Placeholder result: the fake process runs until finished or signalled
HANG = None


def cli_output(
	status: Optional[str] = "completed",
	cost: float = 0.1,
	session_id: str = "session-1",
	questions: Optional[list[dict]] = None,
	is_error: bool = False,
	message: str = "done",
) -> str:
	"""Claude CLI --output-format json payload."""
	data = {
		"type": "result",
		"subtype": "success",
		"is_error": is_error,
		"session_id": session_id,
		"result": message,
		"total_cost_usd": cost,
	}
	if status is not None:
		structured = {"status": status, "message": message}
		if questions is not None:
			structured["questions"] = questions
		data["structured_output"] = structured
	return json.dumps(data)


def completed(cost: float = 0.1, session_id: str = "session-1") -> ProcessResult:
	return ProcessResult(returncode=0, stdout=cli_output(cost=cost, session_id=session_id), stderr="")


def unstructured(cost: float = 0.1) -> ProcessResult:
	return ProcessResult(returncode=0, stdout=cli_output(status=None, cost=cost), stderr="")


def needs_input(cost: float = 0.1, session_id: str = "session-1", question: str = "Which database?") -> ProcessResult:
	questions = [{
		"question": question,
		"header": "Database",
		"options": [{"label": "sqlite"}, {"label": "postgres", "description": "Server"}],
		"multiSelect": False,
	}]
	return ProcessResult(
		returncode=0,
		stdout=cli_output(status="needs_input", cost=cost, session_id=session_id, questions=questions),
		stderr="",
	)


def crashed(returncode: int = 1, stderr: str = "Traceback: boom", cost: float = 0.0) -> ProcessResult:
	stdout = cli_output(cost=cost) if cost else ""
	return ProcessResult(returncode=returncode, stdout=stdout, stderr=stderr)


def failed(cost: float = 0.1) -> ProcessResult:
	"""Clean exit where the agent reports an error."""
	return ProcessResult(returncode=0, stdout=cli_output(status="error", cost=cost, message="tests failing"), stderr="")


class FakeProcess:
	"""In-memory AgentProcess controlled by the test."""

	def __init__(self, pid: int, result: Optional[ProcessResult] = None, ignore_terminate: bool = False):
		loop = asyncio.get_running_loop()
		self.pid = pid
		self.ignore_terminate = ignore_terminate
		self.terminate_calls = 0
		self.kill_calls = 0
		self.returncode: Optional[int] = None
		self._result: asyncio.Future = loop.create_future()
		self._exited = asyncio.Event()
		self._on_output: Optional[Callable[[], None]] = None
		if result is not None:
			self.finish(result)

	def finish(self, result: ProcessResult) -> None:
		if not self._result.done():
			self._result.set_result(result)
		self.returncode = result.returncode
		self._exited.set()

	def emit(self) -> None:
		"""Simulate a chunk of stdout."""
		if self._on_output is not None:
			self._on_output()

	async def communicate(self, on_output: Callable[[], None]) -> ProcessResult:
		self._on_output = on_output
		return await asyncio.shield(self._result)

	def terminate(self) -> None:
		self.terminate_calls += 1
		if not self.ignore_terminate:
			self.finish(ProcessResult(returncode=-15, stdout="", stderr=""))

	def kill(self) -> None:
		self.kill_calls += 1
		self.finish(ProcessResult(returncode=-9, stdout="", stderr=""))

	async def wait(self) -> int:
		await self._exited.wait()
		return self.returncode


class FakeAgent:
	"""AgentRunner that hands out scripted FakeProcesses in order."""

	def __init__(self, *results: Optional[ProcessResult], ignore_terminate: bool = False):
		self.results = list(results)
		self.ignore_terminate = ignore_terminate
		self.requests: list[AgentRequest] = []
		self.processes: list[FakeProcess] = []
		self.spawn_error: Optional[OSError] = None

	def push(self, *results: Optional[ProcessResult]) -> None:
		self.results.extend(results)

	async def spawn(self, request: AgentRequest) -> FakeProcess:
		if self.spawn_error is not None:
			raise self.spawn_error
		self.requests.append(request)
		result = self.results.pop(0) if self.results else HANG
		process = FakeProcess(
			pid=4000 + len(self.processes),
			result=result,
			ignore_terminate=self.ignore_terminate,
		)
		self.processes.append(process)
		return process

	@property
	def skills(self) -> list[str]:
		return [r.skill for r in self.requests]


class ManualClock:
	"""Monotonic clock advanced by hand."""

	def __init__(self, start: float = 1000.0):
		self.now = start

	def __call__(self) -> float:
		return self.now

	def advance(self, seconds: float) -> None:
		self.now += seconds


async def wait_for_status(supervisor, execution_id: str, *statuses: WorkflowStatus, timeout: float = 2.0):
	"""Poll the store until an execution reaches one of the given statuses."""
	async def _poll():
		while True:
			execution = await supervisor.get(execution_id)
			if execution.status in statuses:
				return execution
			await asyncio.sleep(0.01)
	return await asyncio.wait_for(_poll(), timeout)


async def settle(supervisor, timeout: float = 2.0) -> None:
	"""Wait until no execution is pending or running."""
	async def _poll():
		while True:
			active = await supervisor.store.list_executions(
				statuses=[WorkflowStatus.PENDING, WorkflowStatus.RUNNING]
			)
			if not active:
				return
			await asyncio.sleep(0.01)
	await asyncio.wait_for(_poll(), timeout)


def write_tasks(path: Path, sections: list[tuple[str, list[str]]]) -> Path:
	data = {"sections": [{"name": name, "task_ids": ids} for name, ids in sections]}
	path.parent.mkdir(parents=True, exist_ok=True)
	path.write_text(json.dumps(data))
	return path


class GatedAgent(FakeAgent):
	"""FakeAgent whose spawn blocks until the test opens the gate."""

	def __init__(self, *results: Optional[ProcessResult]):
		super().__init__(*results)
		self.spawning = asyncio.Event()
		self.gate = asyncio.Event()

	async def spawn(self, request: AgentRequest) -> FakeProcess:
		self.spawning.set()
		await self.gate.wait()
		return await super().spawn(request)
