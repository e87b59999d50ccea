"""Phase ordering, skip flags and the phase to skill map."""

from dataclasses import dataclass

from ..models import OrchestrationConfig, OrchestrationPhase

PHASE_ORDER: list[OrchestrationPhase] = [
	OrchestrationPhase.DESIGN,
	OrchestrationPhase.ANALYZE,
	OrchestrationPhase.IMPLEMENT,
	OrchestrationPhase.VERIFY,
	OrchestrationPhase.MERGE,
	OrchestrationPhase.COMPLETE,
]


@dataclass(frozen=True)
class PhaseSkills:
	"""Skill identifier for each phase, plus the healer skill."""
	design: str = "flow.design"
	analyze: str = "flow.analyze"
	implement: str = "flow.implement"
	verify: str = "flow.verify"
	merge: str = "flow.merge"
	heal: str = "flow.heal"

	def for_phase(self, phase: OrchestrationPhase) -> str:
		if phase == OrchestrationPhase.COMPLETE:
			raise ValueError("The complete phase has no skill")
		return getattr(self, phase.value)


def is_skipped(phase: OrchestrationPhase, config: OrchestrationConfig) -> bool:
	"""Implement and the terminal marker can never be skipped."""
	if phase == OrchestrationPhase.DESIGN:
		return config.skip_design
	if phase == OrchestrationPhase.ANALYZE:
		return config.skip_analyze
	if phase == OrchestrationPhase.VERIFY:
		return config.skip_verify
	return False


def _resolve_from(
	index: int,
	config: OrchestrationConfig,
) -> tuple[OrchestrationPhase, list[OrchestrationPhase]]:
	skipped = []
	for phase in PHASE_ORDER[index:]:
		if is_skipped(phase, config):
			skipped.append(phase)
			continue
		return phase, skipped
	return OrchestrationPhase.COMPLETE, skipped


def first_phase(config: OrchestrationConfig) -> tuple[OrchestrationPhase, list[OrchestrationPhase]]:
	"""First phase to run and the leading phases bypassed by configuration."""
	return _resolve_from(0, config)


def next_phase(
	current: OrchestrationPhase,
	config: OrchestrationConfig,
) -> tuple[OrchestrationPhase, list[OrchestrationPhase]]:
	"""
	Phase after ``current``, skipping bypassed phases.

	Returns:
		Tuple of (next phase, phases skipped on the way)
	"""
	if current == OrchestrationPhase.COMPLETE:
		return OrchestrationPhase.COMPLETE, []
	return _resolve_from(PHASE_ORDER.index(current) + 1, config)
