"""
Tests for agent invocation and CLI output classification.

Tests:
- Prompt construction for new and resumed sessions
- Command line construction
- parse_agent_output status mapping and error handling
"""

import json
from pathlib import Path

from flow_orchestrator.agent import (
	WORKFLOW_OUTPUT_SCHEMA,
	AgentRequest,
	ClaudeAgent,
	parse_agent_output,
)
from flow_orchestrator.errors import FailureReason
from flow_orchestrator.models import WorkflowStatus

from .helpers import cli_output


class TestAgentRequest:
	"""Tests for prompt construction."""

	def test_initial_prompt(self):
		request = AgentRequest(skill="flow.design", project_path=Path("/tmp/p"), context="Build a todo app")

		prompt = request.build_prompt()

		assert prompt.startswith("/flow.design")
		assert "# User Context" in prompt
		assert prompt.endswith("Build a todo app")

	def test_initial_prompt_without_context(self):
		request = AgentRequest(skill="flow.verify", project_path=Path("/tmp/p"))
		assert request.build_prompt() == "/flow.verify"

	def test_resume_prompt_lists_answers(self):
		request = AgentRequest(
			skill="flow.design",
			project_path=Path("/tmp/p"),
			answers={"Database": "sqlite", "Auth": "none"},
			resume_session_id="session-1",
			continuing=True,
		)

		prompt = request.build_prompt()

		assert prompt.startswith("# User Answers")
		assert "- Database: sqlite" in prompt
		assert "- Auth: none" in prompt
		assert "/flow.design" not in prompt

	def test_answers_without_session_follow_the_skill(self):
		"""Without a session to continue, the answers ride along with a fresh invocation."""
		request = AgentRequest(
			skill="flow.design",
			project_path=Path("/tmp/p"),
			context="Build a todo app",
			answers={"Database": "sqlite"},
			continuing=True,
		)

		prompt = request.build_prompt()

		assert prompt.startswith("/flow.design")
		assert "Build a todo app" in prompt
		assert "- Database: sqlite" in prompt

	def test_continuing_without_answers_does_not_repeat_skill(self):
		request = AgentRequest(
			skill="flow.design",
			project_path=Path("/tmp/p"),
			resume_session_id="session-1",
			continuing=True,
		)

		prompt = request.build_prompt()

		assert prompt.startswith("# User Answers")
		assert "no answers" in prompt
		assert "/flow.design" not in prompt

	def test_new_invocation_in_existing_session_sends_skill(self):
		request = AgentRequest(skill="flow.heal", project_path=Path("/tmp/p"), resume_session_id="session-1")
		assert request.build_prompt() == "/flow.heal"


class TestClaudeAgent:
	"""Tests for CLI command construction."""

	def test_command(self):
		agent = ClaudeAgent(binary="/usr/bin/claude", extra_args=["--verbose"])
		request = AgentRequest(skill="flow.design", project_path=Path("/tmp/p"))

		cmd = agent.build_command(request)

		assert cmd[:4] == ["/usr/bin/claude", "--print", "--output-format", "json"]
		assert json.loads(cmd[cmd.index("--json-schema") + 1]) == WORKFLOW_OUTPUT_SCHEMA
		assert "--resume" not in cmd
		assert cmd[-1] == "--verbose"

	def test_resume_command(self):
		request = AgentRequest(skill="flow.design", project_path=Path("/tmp/p"), resume_session_id="abc")

		cmd = ClaudeAgent().build_command(request)

		assert cmd[cmd.index("--resume") + 1] == "abc"


class TestParseAgentOutput:
	"""Tests for classifying CLI output."""

	def test_completed(self):
		outcome = parse_agent_output(cli_output(cost=0.25, session_id="s-9"))

		assert outcome.status == WorkflowStatus.COMPLETED
		assert outcome.session_id == "s-9"
		assert outcome.cost_usd == 0.25
		assert outcome.result["status"] == "completed"
		assert outcome.message == "done"
		assert outcome.parsed

	def test_needs_input(self):
		questions = [
			{"question": "Which database?", "options": [{"label": "sqlite"}], "multiSelect": True},
			{"header": "missing question text"},
		]

		outcome = parse_agent_output(cli_output(status="needs_input", questions=questions))

		assert outcome.status == WorkflowStatus.WAITING_FOR_INPUT
		assert len(outcome.questions) == 1
		assert outcome.questions[0].question == "Which database?"
		assert outcome.questions[0].multi_select is True
		assert outcome.questions[0].options[0].label == "sqlite"

	def test_structured_error(self):
		outcome = parse_agent_output(cli_output(status="error", message="tests failing"))

		assert outcome.status == WorkflowStatus.FAILED
		assert outcome.error == "tests failing"
		assert outcome.failure_reason == FailureReason.AGENT_ERROR

	def test_is_error(self):
		outcome = parse_agent_output(cli_output(is_error=True, message="rate limited"))

		assert outcome.status == WorkflowStatus.FAILED
		assert outcome.error == "rate limited"
		assert outcome.failure_reason == FailureReason.AGENT_ERROR

	def test_no_structured_output(self):
		outcome = parse_agent_output(cli_output(status=None, message="plain text"))

		assert outcome.status == WorkflowStatus.COMPLETED
		assert outcome.result is None
		assert outcome.message == "plain text"

	def test_unknown_status_is_unstructured(self):
		outcome = parse_agent_output(cli_output(status="thinking"))

		assert outcome.status == WorkflowStatus.COMPLETED
		assert outcome.result is None

	def test_unparseable(self):
		outcome = parse_agent_output("Error: not logged in")

		assert outcome.status == WorkflowStatus.FAILED
		assert outcome.failure_reason == FailureReason.OUTPUT_PARSE
		assert outcome.error == "Parse error: Error: not logged in"
		assert not outcome.parsed

	def test_parse_error_truncates_output(self):
		outcome = parse_agent_output("x" * 500)
		assert outcome.error == "Parse error: " + "x" * 200

	def test_last_json_line_wins(self):
		stdout = "warming up\n" + cli_output(cost=0.3)

		outcome = parse_agent_output(stdout)

		assert outcome.status == WorkflowStatus.COMPLETED
		assert outcome.cost_usd == 0.3

	def test_negative_cost_is_clamped(self):
		outcome = parse_agent_output(cli_output(cost=-1.0))
		assert outcome.cost_usd == 0.0
