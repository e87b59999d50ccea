"""
Project Registry - resolves project ids to working directories.

The registry is a small JSON file (``projects.json`` in the config dir)
listing known projects. Discovery of projects is out of scope; the
registry only answers "does this id exist and where does it live".
"""

import json
import logging
from pathlib import Path
from typing import Optional, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ProjectResolver(Protocol):
	"""Resolves a project id to its working directory, or None when unknown."""

	def resolve(self, project_id: str) -> Optional[Path]:
		...


class ProjectEntry(BaseModel):
	"""A registered project."""
	id: str = Field(description="Stable project identifier")
	path: str = Field(description="Absolute path to the project working directory")
	name: str = Field(default="", description="Display name")


class RegistryFile(BaseModel):
	projects: list[ProjectEntry] = Field(default_factory=list)


class ProjectRegistry:
	"""In-memory project map, optionally backed by a registry file."""

	def __init__(self, projects: Optional[dict[str, Path]] = None, registry_file: Optional[Path] = None):
		self.registry_file = registry_file
		self._projects: dict[str, ProjectEntry] = {}
		for project_id, path in (projects or {}).items():
			self._projects[project_id] = ProjectEntry(id=project_id, path=str(path))

	@classmethod
	def load(cls, registry_file: Path) -> "ProjectRegistry":
		"""Load the registry from disk; a missing file is an empty registry."""
		registry = cls(registry_file=registry_file)
		if not registry_file.exists():
			return registry

		data = RegistryFile.model_validate(json.loads(registry_file.read_text()))
		for entry in data.projects:
			registry._projects[entry.id] = entry
		logger.debug(f"Loaded {len(data.projects)} projects from {registry_file}")
		return registry

	def save(self) -> None:
		if self.registry_file is None:
			raise ValueError("Registry has no backing file")
		self.registry_file.parent.mkdir(parents=True, exist_ok=True)
		data = RegistryFile(projects=list(self._projects.values()))
		self.registry_file.write_text(data.model_dump_json(indent=2))

	def register(self, project_id: str, path: Path, name: str = "") -> ProjectEntry:
		entry = ProjectEntry(id=project_id, path=str(Path(path).resolve()), name=name or project_id)
		self._projects[project_id] = entry
		return entry

	def resolve(self, project_id: str) -> Optional[Path]:
		entry = self._projects.get(project_id)
		if entry is None:
			return None
		return Path(entry.path)

	def entries(self) -> list[ProjectEntry]:
		return sorted(self._projects.values(), key=lambda e: e.id)
