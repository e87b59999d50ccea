"""Orchestrator module - Supervision, budgets, healing, and the phase engine."""

from .budget import BudgetTracker
from .engine import OrchestrationEngine
from .healing import HealingController
from .phases import PhaseSkills
from .supervisor import ProcessRegistry, WorkflowSupervisor

__all__ = [
	"BudgetTracker",
	"HealingController",
	"OrchestrationEngine",
	"PhaseSkills",
	"ProcessRegistry",
	"WorkflowSupervisor",
]
