"""Configuration system using platformdirs for cross-platform paths."""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import platformdirs

APP_NAME = "flow-orchestrator"
APP_AUTHOR = "flow-orchestrator"

ENV_PREFIX = "FLOW_ORCHESTRATOR_"


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	db_path: Path = field(init=False)
	log_dir: Path = field(init=False)
	registry_file: Path = field(init=False)

	# Agent invocation
	claude_binary: str = "claude"
	default_timeout_seconds: float = 4 * 60 * 60
	cancel_grace_seconds: float = 5.0

	# Engine polling
	poll_interval_seconds: float = 3.0
	stale_after_seconds: float = 300.0

	healer_skill: str = "flow.heal"

	def __post_init__(self) -> None:
		self.db_path = self.data_dir / "orchestrator.db"
		self.log_dir = self.data_dir / "logs"
		self.registry_file = self.config_dir / "projects.json"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)


_PATH_FIELDS = {"config_dir", "data_dir"}
_FLOAT_FIELDS = {
	"default_timeout_seconds",
	"cancel_grace_seconds",
	"poll_interval_seconds",
	"stale_after_seconds",
}
_STR_FIELDS = {"claude_binary", "healer_skill"}


def _apply_env_overrides(config: Config) -> Config:
	"""Apply FLOW_ORCHESTRATOR_* environment variable overrides."""
	for attr in _PATH_FIELDS | _FLOAT_FIELDS | _STR_FIELDS:
		val = os.getenv(ENV_PREFIX + attr.upper())
		if not val:
			continue
		if attr in _PATH_FIELDS:
			setattr(config, attr, Path(val))
		elif attr in _FLOAT_FIELDS:
			try:
				setattr(config, attr, float(val))
			except ValueError:
				raise ValueError(f"{ENV_PREFIX}{attr.upper()} must be a number, got {val!r}")
		else:
			setattr(config, attr, val)
	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _apply_toml(config: Config) -> Config:
	"""Apply config.toml overrides if file exists."""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	with open(toml_path, "rb") as f:
		data = tomllib.load(f)

	for key, val in data.items():
		if key in _PATH_FIELDS:
			setattr(config, key, Path(os.path.expanduser(val)))
		elif key in _FLOAT_FIELDS:
			setattr(config, key, float(val))
		elif key in _STR_FIELDS:
			setattr(config, key, str(val))

	# Recompute derived paths after toml overrides
	config.__post_init__()
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars > config.toml > defaults."""
	config = Config()
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	config.ensure_dirs()
	return config


# Singleton
_config: Config | None = None


def get_config() -> Config:
	"""Get or create the global config instance."""
	global _config
	if _config is None:
		_config = load_config()
	return _config
