"""Factory functions and git fakes shared by the stream-status tests."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Any

from stream_status.models import Commit, Stream, WorktreeInfo

GIT_ENV = {
	"GIT_AUTHOR_NAME": "test",
	"GIT_AUTHOR_EMAIL": "test@test.com",
	"GIT_COMMITTER_NAME": "test",
	"GIT_COMMITTER_EMAIL": "test@test.com",
}


def make_stream(**overrides: Any) -> Stream:
	"""Create a Stream with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"id": "stream-0001-auth",
		"stream_number": "0001",
		"title": "Auth service",
		"status": "active",
		"branch": "stream-0001-auth",
		"worktree_path": "/nonexistent/worktrees/stream-0001-auth",
	}
	defaults.update(overrides)
	return Stream(**defaults)


def make_commit(**overrides: Any) -> Commit:
	"""Create a Commit with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"stream_id": "stream-0001-auth",
		"commit_hash": "a" * 40,
		"message": "feat: add login",
		"author": "dev",
		"files_changed": 2,
	}
	defaults.update(overrides)
	return Commit(**defaults)


class FakeGit:
	"""In-memory stand-in for GitClient with canned worktrees, merges and logs."""

	def __init__(
		self,
		repo_root: str = "/repo",
		worktrees: dict[str, WorktreeInfo] | None = None,
		merged: set[str] | None = None,
		logs: dict[str, str] | None = None,
	) -> None:
		self.repo_root = repo_root
		self.main_branch = "main"
		self.worktrees = worktrees if worktrees is not None else {
			"main": WorktreeInfo(path=repo_root, branch="main", commit="0" * 40, is_main=True),
		}
		self.merged = merged or set()
		self.logs = logs or {}
		self.log_calls: list[tuple[str, str | None, str | None, int]] = []
		self.run_calls: list[tuple[str, ...]] = []
		self.run_results: dict[str, tuple[bool, str]] = {}

	async def list_worktrees(self) -> dict[str, WorktreeInfo]:
		return dict(self.worktrees)

	async def list_merged_branches(self, target: str | None = None) -> set[str]:
		return set(self.merged)

	async def log_commits(
		self,
		rev_range: str,
		*,
		cwd: str | Path | None = None,
		since: str | None = None,
		max_count: int = 50,
	) -> str | None:
		key = str(cwd) if cwd is not None else self.repo_root
		self.log_calls.append((rev_range, key, since, max_count))
		return self.logs.get(key)

	async def run(self, *args: str, cwd: str | Path | None = None) -> tuple[bool, str]:
		"""Succeeds unless the subcommand ("push", "commit", ...) was given a canned result."""
		self.run_calls.append(args)
		return self.run_results.get(args[0], (True, ""))


def git(repo: Path, *args: str) -> str:
	"""Run git in repo with a fixed test identity."""
	env = {**os.environ, **GIT_ENV}
	proc = subprocess.run(
		["git", *args], cwd=str(repo), check=True, capture_output=True, text=True, env=env,
	)
	return proc.stdout
