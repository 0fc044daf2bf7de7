"""Configuration system using platformdirs for cross-platform paths."""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import platformdirs

APP_NAME = "spec-orchestrator"
APP_AUTHOR = "spec-orchestrator"

EXECUTION_MODES = ("concurrent", "sequential")


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	progress_db_path: Path = field(init=False)
	log_dir: Path = field(init=False)

	# User-configurable
	progress_filename: str = "progress.md"
	execution_mode: str = "concurrent"
	command_timeout: int = 300
	log_level: str = "INFO"

	def __post_init__(self) -> None:
		self.progress_db_path = self.data_dir / "progress.db"
		self.log_dir = self.data_dir / "logs"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)


def _apply_env_overrides(config: Config) -> Config:
	"""Apply SPEC_ORCHESTRATOR_* environment variable overrides."""
	path_map = {
		"SPEC_ORCHESTRATOR_CONFIG_DIR": "config_dir",
		"SPEC_ORCHESTRATOR_DATA_DIR": "data_dir",
	}
	for env_key, attr in path_map.items():
		val = os.getenv(env_key)
		if val:
			setattr(config, attr, Path(val))

	value_map = {
		"SPEC_ORCHESTRATOR_PROGRESS_FILENAME": ("progress_filename", str),
		"SPEC_ORCHESTRATOR_EXECUTION_MODE": ("execution_mode", str),
		"SPEC_ORCHESTRATOR_COMMAND_TIMEOUT": ("command_timeout", int),
		"SPEC_ORCHESTRATOR_LOG_LEVEL": ("log_level", str),
	}
	for env_key, (attr, cast) in value_map.items():
		val = os.getenv(env_key)
		if val:
			setattr(config, attr, cast(val))

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

	path_fields = {"config_dir", "data_dir"}
	for key, val in data.items():
		if hasattr(config, key):
			if key in path_fields:
				setattr(config, key, Path(os.path.expanduser(val)))
			else:
				setattr(config, key, val)

	# Recompute derived paths after toml overrides
	config.__post_init__()
	return config


def _validate(config: Config) -> Config:
	if config.execution_mode not in EXECUTION_MODES:
		raise ValueError(
			f"execution_mode must be one of {', '.join(EXECUTION_MODES)}, got '{config.execution_mode}'"
		)
	if config.command_timeout <= 0:
		raise ValueError(f"command_timeout must be positive, got {config.command_timeout}")
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars > config.toml > defaults."""
	config = Config()
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	config = _validate(config)
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
