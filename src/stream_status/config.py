"""TOML + environment configuration loader for stream-status."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

DEFAULT_PORT = 3001


@dataclass
class ProjectConfig:
	"""The repository whose streams are tracked."""

	root: str = ""
	name: str = ""  # defaults to basename of root
	worktree_root: str = ""  # defaults to <root>/.worktrees

	@property
	def resolved_root(self) -> Path:
		return Path(os.path.expanduser(self.root)).resolve()

	@property
	def resolved_name(self) -> str:
		return self.name or self.resolved_root.name

	@property
	def resolved_worktree_root(self) -> Path:
		if self.worktree_root:
			return Path(os.path.expanduser(self.worktree_root))
		return self.resolved_root / ".worktrees"


@dataclass
class DatabaseConfig:
	path: str = ""  # defaults to ~/.stream-status/<project name>.db


@dataclass
class ServerConfig:
	"""HTTP API settings."""

	host: str = "127.0.0.1"
	port: int = DEFAULT_PORT
	dashboard_path: str = ""
	auth_token: str = ""
	sync_on_start: bool = True
	scan_interval_seconds: int = 60
	heartbeat_seconds: int = 30
	cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class GitConfig:
	main_branch: str = "main"
	remote: str = "origin"
	timeout_seconds: float = 30.0


@dataclass
class StreamStatusConfig:
	"""Top-level stream-status configuration."""

	project: ProjectConfig = field(default_factory=ProjectConfig)
	database: DatabaseConfig = field(default_factory=DatabaseConfig)
	server: ServerConfig = field(default_factory=ServerConfig)
	git: GitConfig = field(default_factory=GitConfig)

	@property
	def database_path(self) -> Path:
		if self.database.path:
			return Path(os.path.expanduser(self.database.path))
		return Path.home() / ".stream-status" / f"{self.project.resolved_name}.db"


def _parse_bool(value: Any) -> bool:
	if isinstance(value, bool):
		return value
	return str(value).strip().lower() not in ("0", "false", "no", "off", "")


def _build_project(data: dict[str, Any]) -> ProjectConfig:
	pc = ProjectConfig()
	for key in ("root", "name", "worktree_root"):
		if key in data:
			setattr(pc, key, str(data[key]))
	return pc


def _build_database(data: dict[str, Any]) -> DatabaseConfig:
	dc = DatabaseConfig()
	if "path" in data:
		dc.path = str(data["path"])
	return dc


def _build_server(data: dict[str, Any]) -> ServerConfig:
	sc = ServerConfig()
	for key in ("host", "dashboard_path", "auth_token"):
		if key in data:
			setattr(sc, key, str(data[key]))
	for key in ("port", "scan_interval_seconds", "heartbeat_seconds"):
		if key in data:
			setattr(sc, key, int(data[key]))
	if "sync_on_start" in data:
		sc.sync_on_start = _parse_bool(data["sync_on_start"])
	if "cors_origins" in data:
		sc.cors_origins = [str(o) for o in data["cors_origins"]]
	return sc


def _build_git(data: dict[str, Any]) -> GitConfig:
	gc = GitConfig()
	for key in ("main_branch", "remote"):
		if key in data:
			setattr(gc, key, str(data[key]))
	if "timeout_seconds" in data:
		gc.timeout_seconds = float(data["timeout_seconds"])
	return gc


def apply_env_overrides(config: StreamStatusConfig, env: Mapping[str, str] | None = None) -> StreamStatusConfig:
	"""Environment variables win over file values."""
	env = os.environ if env is None else env
	if env.get("PROJECT_ROOT"):
		config.project.root = env["PROJECT_ROOT"]
	if env.get("PROJECT_NAME"):
		config.project.name = env["PROJECT_NAME"]
	if env.get("WORKTREE_ROOT"):
		config.project.worktree_root = env["WORKTREE_ROOT"]
	if env.get("DATABASE_PATH"):
		config.database.path = env["DATABASE_PATH"]
	if env.get("PORT"):
		config.server.port = int(env["PORT"])
	if env.get("DASHBOARD_PATH"):
		config.server.dashboard_path = env["DASHBOARD_PATH"]
	if env.get("SYNC_ON_START"):
		config.server.sync_on_start = _parse_bool(env["SYNC_ON_START"])
	if env.get("STREAM_STATUS_TOKEN"):
		config.server.auth_token = env["STREAM_STATUS_TOKEN"]
	return config


def load_config(path: str | Path | None = None, env: Mapping[str, str] | None = None) -> StreamStatusConfig:
	"""Load a stream-status.toml config file, then apply environment overrides.

	Args:
		path: Path to the TOML config file, or None to use only the environment.
		env: Environment mapping (defaults to os.environ).

	Returns:
		Parsed StreamStatusConfig.

	Raises:
		FileNotFoundError: If path is given but doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
	"""
	config = StreamStatusConfig()
	if path is not None:
		config_path = Path(path)
		if not config_path.exists():
			raise FileNotFoundError(f"Config file not found: {config_path}")
		with open(config_path, "rb") as f:
			data = tomllib.load(f)
		if "project" in data:
			config.project = _build_project(data["project"])
		if "database" in data:
			config.database = _build_database(data["database"])
		if "server" in data:
			config.server = _build_server(data["server"])
		if "git" in data:
			config.git = _build_git(data["git"])
	return apply_env_overrides(config, env)


def validate_config(config: StreamStatusConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded StreamStatusConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	if not config.project.root:
		issues.append(("error", "project.root is not set (set PROJECT_ROOT or [project] root)"))
	else:
		root = config.project.resolved_root
		if not root.exists():
			issues.append(("error", f"project.root does not exist: {root}"))
		elif not (root / ".git").exists():
			issues.append(("error", f"project.root is not a git repository (no .git): {root}"))

	dashboard = config.server.dashboard_path
	if dashboard and not Path(os.path.expanduser(dashboard)).is_dir():
		issues.append(("error", f"server.dashboard_path does not exist: {dashboard}"))

	if not 0 < config.server.port < 65536:
		issues.append(("error", f"server.port out of range: {config.server.port}"))
	if config.server.scan_interval_seconds < 10:
		issues.append(("warning", f"scan_interval_seconds is very low: {config.server.scan_interval_seconds}s"))
	if config.git.timeout_seconds <= 0:
		issues.append(("warning", f"git.timeout_seconds is not positive: {config.git.timeout_seconds}"))

	return issues
