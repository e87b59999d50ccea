"""
Execution Store - SQLite-backed durable records for executions.

Features:
- One row per workflow execution and per orchestration, replaced atomically
- Per-project recency index over both tables
- Status filters used by reconciliation
"""

import logging
from pathlib import Path
from typing import Iterable, Optional

import aiosqlite

from .models import (
	OrchestrationExecution,
	OrchestrationStatus,
	WorkflowExecution,
	WorkflowStatus,
)

logger = logging.getLogger(__name__)


class ExecutionStore:
	"""
	SQLite-backed storage for workflow executions and orchestrations.

	Every save is a single INSERT OR REPLACE committed in its own
	transaction, so a reader never observes a partially written record.

	Usage:
		store = ExecutionStore(config.db_path)
		await store.init()

		await store.save_execution(execution)
		execution = await store.get_execution(execution.id)
	"""

	def __init__(self, db_path: str | Path):
		"""Initialize the execution store."""
		self.db_path = Path(db_path)
		self.db_path.parent.mkdir(parents=True, exist_ok=True)
		self._db: Optional[aiosqlite.Connection] = None

	async def init(self):
		"""Initialize the database schema."""
		if self._db is not None:
			return
		self._db = await aiosqlite.connect(str(self.db_path))
		self._db.row_factory = aiosqlite.Row

		await self._db.execute("""
			CREATE TABLE IF NOT EXISTS workflow_executions (
				id TEXT PRIMARY KEY,
				project_id TEXT NOT NULL,
				status TEXT NOT NULL,
				data TEXT NOT NULL,
				updated_at TEXT NOT NULL
			)
		""")

		await self._db.execute("""
			CREATE TABLE IF NOT EXISTS orchestrations (
				id TEXT PRIMARY KEY,
				project_id TEXT NOT NULL,
				status TEXT NOT NULL,
				data TEXT NOT NULL,
				updated_at TEXT NOT NULL
			)
		""")

		await self._db.execute("""
			CREATE INDEX IF NOT EXISTS idx_workflow_project_updated
			ON workflow_executions(project_id, updated_at)
		""")

		await self._db.execute("""
			CREATE INDEX IF NOT EXISTS idx_orchestration_project_updated
			ON orchestrations(project_id, updated_at)
		""")

		await self._db.commit()
		logger.info(f"Execution store initialized: {self.db_path}")

	async def close(self):
		"""Close the database connection."""
		if self._db:
			await self._db.close()
			self._db = None

	async def _conn(self) -> aiosqlite.Connection:
		if self._db is None:
			await self.init()
		return self._db

	# =========================================================================
	# Workflow executions
	# =========================================================================

	async def save_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
		"""Persist a workflow execution, stamping updated_at."""
		db = await self._conn()
		execution.touch()
		await db.execute(
			"""
			INSERT OR REPLACE INTO workflow_executions (id, project_id, status, data, updated_at)
			VALUES (?, ?, ?, ?, ?)
			""",
			(
				execution.id,
				execution.project_id,
				execution.status.value,
				execution.model_dump_json(),
				execution.updated_at,
			)
		)
		await db.commit()
		return execution

	async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
		db = await self._conn()
		async with db.execute(
			"SELECT data FROM workflow_executions WHERE id = ?",
			(execution_id,)
		) as cursor:
			row = await cursor.fetchone()
		if row is None:
			return None
		return WorkflowExecution.model_validate_json(row["data"])

	async def list_executions(
		self,
		project_id: Optional[str] = None,
		statuses: Optional[Iterable[WorkflowStatus]] = None,
	) -> list[WorkflowExecution]:
		"""List workflow executions, most recently updated first."""
		rows = await self._select("workflow_executions", project_id, statuses)
		return [WorkflowExecution.model_validate_json(row["data"]) for row in rows]

	# =========================================================================
	# Orchestrations
	# =========================================================================

	async def save_orchestration(self, orchestration: OrchestrationExecution) -> OrchestrationExecution:
		"""Persist an orchestration, stamping updated_at."""
		db = await self._conn()
		orchestration.touch()
		await db.execute(
			"""
			INSERT OR REPLACE INTO orchestrations (id, project_id, status, data, updated_at)
			VALUES (?, ?, ?, ?, ?)
			""",
			(
				orchestration.id,
				orchestration.project_id,
				orchestration.status.value,
				orchestration.model_dump_json(),
				orchestration.updated_at,
			)
		)
		await db.commit()
		return orchestration

	async def get_orchestration(self, orchestration_id: str) -> Optional[OrchestrationExecution]:
		db = await self._conn()
		async with db.execute(
			"SELECT data FROM orchestrations WHERE id = ?",
			(orchestration_id,)
		) as cursor:
			row = await cursor.fetchone()
		if row is None:
			return None
		return OrchestrationExecution.model_validate_json(row["data"])

	async def list_orchestrations(
		self,
		project_id: Optional[str] = None,
		statuses: Optional[Iterable[OrchestrationStatus]] = None,
	) -> list[OrchestrationExecution]:
		"""List orchestrations, most recently updated first."""
		rows = await self._select("orchestrations", project_id, statuses)
		return [OrchestrationExecution.model_validate_json(row["data"]) for row in rows]

	# =========================================================================
	# Project index
	# =========================================================================

	async def project_index(self, project_id: str) -> list[tuple[str, str, str]]:
		"""
		Execution ids recorded for a project, most recent first.

		Returns:
			List of (kind, id, status) where kind is "workflow" or "orchestration"
		"""
		db = await self._conn()
		async with db.execute(
			"""
			SELECT 'workflow' AS kind, id, status, updated_at
			FROM workflow_executions WHERE project_id = ?
			UNION ALL
			SELECT 'orchestration' AS kind, id, status, updated_at
			FROM orchestrations WHERE project_id = ?
			ORDER BY updated_at DESC
			""",
			(project_id, project_id)
		) as cursor:
			rows = await cursor.fetchall()
		return [(row["kind"], row["id"], row["status"]) for row in rows]

	async def _select(self, table: str, project_id, statuses) -> list[aiosqlite.Row]:
		db = await self._conn()
		query = f"SELECT data FROM {table} WHERE 1=1"
		params: list = []

		if project_id:
			query += " AND project_id = ?"
			params.append(project_id)

		if statuses is not None:
			values = [s.value for s in statuses]
			if not values:
				return []
			query += f" AND status IN ({', '.join('?' for _ in values)})"
			params.extend(values)

		query += " ORDER BY updated_at DESC"

		async with db.execute(query, params) as cursor:
			return list(await cursor.fetchall())
