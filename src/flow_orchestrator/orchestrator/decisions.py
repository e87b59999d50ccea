"""
Decision Oracle contract.

The engine consults an oracle when an execution's state is ambiguous: no
progress signal for longer than the staleness threshold, or a completion
without a structured result. The oracle's heuristic lives outside this
package; only the request and verdict shapes are defined here.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field


class DecisionAction(str, Enum):
	"""What the engine should do with the current unit of work."""
	WAIT = "wait"
	PROCEED = "proceed"
	HEAL = "heal"
	ESCALATE = "escalate"


class DecisionTrigger(str, Enum):
	"""Why the oracle was consulted."""
	NO_PROGRESS = "no_progress"
	UNCLEAR_OUTPUT = "unclear_output"


@dataclass
class DecisionContext:
	"""Signals handed to the oracle."""
	orchestration_id: str
	project_id: str
	phase: str
	batch_index: Optional[int]
	execution_id: str
	execution_status: str
	idle_seconds: float
	trigger: DecisionTrigger
	output_excerpt: str = ""
	recent_decisions: list[dict[str, Any]] = field(default_factory=list)


class DecisionVerdict(BaseModel):
	"""The oracle's answer and what it cost to produce."""
	action: DecisionAction
	reason: str = ""
	cost_usd: float = Field(default=0.0, ge=0)


class DecisionOracle(Protocol):

	async def decide(self, context: DecisionContext) -> DecisionVerdict:
		...
