"""
Agent invocation - spawning the Claude CLI and classifying its output.

The supervisor talks to the agent through two small interfaces:
``AgentRunner.spawn(request)`` returns an ``AgentProcess`` that can be
awaited for its result, terminated, or killed. ``ClaudeAgent`` is the
production runner; tests substitute in-memory fakes.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from pydantic import ValidationError

from .errors import FailureReason
from .models import AgentQuestion, WorkflowStatus

logger = logging.getLogger(__name__)


# JSON schema requested via --json-schema so the agent reports a status
WORKFLOW_OUTPUT_SCHEMA: dict[str, Any] = {
	"type": "object",
	"properties": {
		"status": {"type": "string", "enum": ["completed", "needs_input", "error"]},
		"phase": {"type": "string"},
		"message": {"type": "string"},
		"questions": {
			"type": "array",
			"items": {
				"type": "object",
				"properties": {
					"question": {"type": "string"},
					"header": {"type": "string"},
					"options": {
						"type": "array",
						"items": {
							"type": "object",
							"properties": {
								"label": {"type": "string"},
								"description": {"type": "string"},
							},
							"required": ["label"],
						},
					},
					"multiSelect": {"type": "boolean"},
				},
				"required": ["question"],
			},
		},
		"artifacts": {"type": "array", "items": {"type": "object"}},
	},
	"required": ["status"],
}


@dataclass
class AgentRequest:
	"""Everything the agent needs for one invocation."""
	skill: str
	project_path: Path
	context: str = ""
	answers: dict[str, Any] = field(default_factory=dict)
	resume_session_id: Optional[str] = None
	continuing: bool = False

	def build_prompt(self) -> str:
		"""
		Prompt for one invocation.

		Continuing a session sends only the answers. Anything else starts
		with the skill invocation and carries the answers, if any, after it.
		"""
		if self.continuing and self.resume_session_id:
			return "\n".join(self._answer_lines())

		lines = [f"/{self.skill}"]
		if self.context:
			lines.extend(["", "# User Context", "", self.context])
		if self.answers:
			lines.append("")
			lines.extend(self._answer_lines())
		return "\n".join(lines)

	def _answer_lines(self) -> list[str]:
		lines = ["# User Answers", ""]
		if self.answers:
			lines.extend(["The user has answered the questions:", ""])
			lines.extend(f"- {key}: {value}" for key, value in self.answers.items())
		else:
			lines.append("The user gave no answers. Use your best judgement for the open questions.")
		lines.extend([
			"",
			"Continue the workflow using these answers. If you need more input,"
			" set status to \"needs_input\" with a questions array.",
		])
		return lines


@dataclass
class ProcessResult:
	"""Raw outcome of an agent process."""
	returncode: int
	stdout: str
	stderr: str


class AgentProcess(Protocol):
	"""A spawned agent invocation."""

	pid: Optional[int]

	async def communicate(self, on_output: Callable[[], None]) -> ProcessResult:
		"""Wait for the process to exit, calling on_output for each stdout chunk."""
		...

	def terminate(self) -> None:
		...

	def kill(self) -> None:
		...

	async def wait(self) -> int:
		...


class AgentRunner(Protocol):
	"""Starts agent processes."""

	async def spawn(self, request: AgentRequest) -> AgentProcess:
		...


class ClaudeProcess:
	"""AgentProcess backed by an asyncio subprocess."""

	CHUNK_SIZE = 4096

	def __init__(self, process: asyncio.subprocess.Process, prompt: str):
		self._process = process
		self._prompt = prompt
		self.pid = process.pid

	async def communicate(self, on_output: Callable[[], None]) -> ProcessResult:
		if self._process.stdin is not None:
			try:
				self._process.stdin.write(self._prompt.encode())
				await self._process.stdin.drain()
			except (BrokenPipeError, ConnectionResetError) as e:
				logger.warning(f"Agent process {self.pid} closed stdin early: {e}")
			finally:
				self._process.stdin.close()

		stdout, stderr = await asyncio.gather(
			self._read(self._process.stdout, on_output),
			self._read(self._process.stderr, None),
		)
		returncode = await self._process.wait()
		return ProcessResult(returncode=returncode, stdout=stdout, stderr=stderr)

	async def _read(self, stream: Optional[asyncio.StreamReader], on_chunk) -> str:
		if stream is None:
			return ""
		chunks: list[bytes] = []
		while True:
			chunk = await stream.read(self.CHUNK_SIZE)
			if not chunk:
				break
			chunks.append(chunk)
			if on_chunk is not None:
				on_chunk()
		return b"".join(chunks).decode(errors="replace")

	def terminate(self) -> None:
		try:
			self._process.terminate()
		except ProcessLookupError:
			pass

	def kill(self) -> None:
		try:
			self._process.kill()
		except ProcessLookupError:
			pass

	async def wait(self) -> int:
		return await self._process.wait()


class ClaudeAgent:
	"""Runs skills through the Claude CLI in print mode with JSON output."""

	def __init__(self, binary: str = "claude", extra_args: Optional[list[str]] = None):
		self.binary = binary
		self.extra_args = extra_args or []

	def build_command(self, request: AgentRequest) -> list[str]:
		cmd = [
			self.binary,
			"--print",
			"--output-format", "json",
			"--json-schema", json.dumps(WORKFLOW_OUTPUT_SCHEMA),
		]
		if request.resume_session_id:
			cmd.extend(["--resume", request.resume_session_id])
		cmd.extend(self.extra_args)
		return cmd

	async def spawn(self, request: AgentRequest) -> ClaudeProcess:
		"""
		Start the CLI in the project directory.

		Raises:
			OSError: when the binary cannot be executed
		"""
		cmd = self.build_command(request)
		logger.info(f"Spawning agent for skill '{request.skill}' in {request.project_path}")
		process = await asyncio.create_subprocess_exec(
			*cmd,
			stdin=asyncio.subprocess.PIPE,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.PIPE,
			cwd=str(request.project_path),
		)
		return ClaudeProcess(process, request.build_prompt())


# =============================================================================
# Output classification
# =============================================================================

@dataclass
class AgentOutcome:
	"""Classified result of one agent invocation."""
	status: WorkflowStatus
	session_id: Optional[str] = None
	cost_usd: float = 0.0
	result: Optional[dict[str, Any]] = None
	message: Optional[str] = None
	questions: list[AgentQuestion] = field(default_factory=list)
	error: Optional[str] = None
	failure_reason: Optional[FailureReason] = None

	@property
	def parsed(self) -> bool:
		return self.failure_reason != FailureReason.OUTPUT_PARSE


def _load_result(stdout: str) -> dict[str, Any]:
	"""Parse the CLI result object; falls back to the last JSON line of a stream."""
	text = stdout.strip()
	try:
		data = json.loads(text)
	except json.JSONDecodeError:
		lines = [line for line in text.splitlines() if line.strip()]
		if not lines:
			raise
		data = json.loads(lines[-1])
	if not isinstance(data, dict):
		raise ValueError(f"expected a JSON object, got {type(data).__name__}")
	return data


def _parse_questions(raw: Any) -> list[AgentQuestion]:
	questions = []
	for item in raw if isinstance(raw, list) else []:
		try:
			questions.append(AgentQuestion.model_validate(item))
		except ValidationError as e:
			logger.warning(f"Dropping malformed agent question: {e}")
	return questions


def parse_agent_output(stdout: str) -> AgentOutcome:
	"""
	Classify Claude CLI JSON output.

	- ``is_error`` true: failed
	- structured status ``needs_input``: waiting_for_input with questions
	- structured status ``completed``: completed with the structured payload
	- structured status ``error``: failed
	- no structured output: completed with no structured payload

	Unparseable output yields a failed outcome with reason output_parse.
	"""
	try:
		data = _load_result(stdout)
	except ValueError as e:
		# json.JSONDecodeError is a ValueError
		return AgentOutcome(
			status=WorkflowStatus.FAILED,
			error=f"Parse error: {stdout[:200]}" if stdout else f"Parse error: {e}",
			failure_reason=FailureReason.OUTPUT_PARSE,
		)

	session_id = data.get("session_id")
	try:
		cost = float(data.get("total_cost_usd") or 0.0)
	except (TypeError, ValueError):
		cost = 0.0
	cost = max(cost, 0.0)

	outcome = AgentOutcome(status=WorkflowStatus.COMPLETED, session_id=session_id, cost_usd=cost)

	if data.get("is_error"):
		outcome.status = WorkflowStatus.FAILED
		outcome.error = str(data.get("result") or "Agent reported an error")
		outcome.failure_reason = FailureReason.AGENT_ERROR
		return outcome

	structured = data.get("structured_output")
	if not isinstance(structured, dict):
		outcome.message = data.get("result") if isinstance(data.get("result"), str) else None
		return outcome

	outcome.result = structured
	outcome.message = structured.get("message")
	status = structured.get("status")

	if status == "needs_input":
		outcome.status = WorkflowStatus.WAITING_FOR_INPUT
		outcome.questions = _parse_questions(structured.get("questions"))
	elif status == "error":
		outcome.status = WorkflowStatus.FAILED
		outcome.error = structured.get("message") or "Agent reported an error"
		outcome.failure_reason = FailureReason.AGENT_ERROR
	elif status != "completed":
		# Unknown status: keep the payload but leave it unstructured
		outcome.result = None

	return outcome
