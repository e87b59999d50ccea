"""Fixtures wiring a store, supervisor and engine around a fake agent."""

from pathlib import Path

import pytest

from flow_orchestrator.config import Config
from flow_orchestrator.orchestrator.batches import StaticTaskSource, TaskInventory, TaskSection
from flow_orchestrator.orchestrator.engine import OrchestrationEngine
from flow_orchestrator.orchestrator.supervisor import ProcessRegistry, WorkflowSupervisor
from flow_orchestrator.projects import ProjectRegistry
from flow_orchestrator.store import ExecutionStore

from .helpers import FakeAgent, ManualClock

PROJECT = "demo"


@pytest.fixture
def config(tmp_path: Path) -> Config:
	config = Config(
		config_dir=tmp_path / "config",
		data_dir=tmp_path / "data",
		cancel_grace_seconds=0.05,
		poll_interval_seconds=0.01,
		stale_after_seconds=300.0,
	)
	config.ensure_dirs()
	return config


@pytest.fixture
def projects(tmp_path: Path) -> ProjectRegistry:
	project_dir = tmp_path / "projects" / PROJECT
	project_dir.mkdir(parents=True)
	return ProjectRegistry({PROJECT: project_dir})


@pytest.fixture
async def store(config: Config):
	store = ExecutionStore(config.db_path)
	await store.init()
	yield store
	await store.close()


@pytest.fixture
def agent() -> FakeAgent:
	return FakeAgent()


@pytest.fixture
def clock() -> ManualClock:
	return ManualClock()


@pytest.fixture
def registry() -> ProcessRegistry:
	return ProcessRegistry()


@pytest.fixture
def live_pids() -> set[int]:
	"""Pids the supervisor treats as still running; every other pid is gone."""
	return set()


@pytest.fixture
async def supervisor(store, projects, agent, registry, config, clock, live_pids):
	supervisor = WorkflowSupervisor(
		store, projects, agent,
		registry=registry,
		config=config,
		clock=clock,
		pid_alive=live_pids.__contains__,
	)
	yield supervisor
	await supervisor.shutdown()


@pytest.fixture
def tasks() -> TaskInventory:
	return TaskInventory(sections=[TaskSection(name="Setup", task_ids=["T001", "T002"])])


@pytest.fixture
def engine(store, supervisor, projects, tasks, config, clock) -> OrchestrationEngine:
	return OrchestrationEngine(
		store,
		supervisor,
		projects,
		task_source=StaticTaskSource(tasks),
		config=config,
		clock=clock,
	)

