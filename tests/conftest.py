"""Shared pytest fixtures for stream-status tests."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest
from helpers import git

from stream_status.db import Database


@pytest.fixture()
def db() -> Database:
	"""In-memory Database with schema initialized."""
	return Database(":memory:")


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
	"""A real git repo on `main` with one commit, plus a bare `origin` remote."""
	remote = tmp_path / "origin.git"
	subprocess.run(["git", "init", "--bare", str(remote)], check=True, capture_output=True)

	repo = tmp_path / "project"
	repo.mkdir()
	git(repo, "init")
	git(repo, "checkout", "-b", "main")
	# Commits made by the code under test do not see GIT_ENV
	git(repo, "config", "user.name", "test")
	git(repo, "config", "user.email", "test@test.com")
	git(repo, "config", "commit.gpgsign", "false")
	(repo / "README.md").write_text("# Test repo\n")
	git(repo, "add", ".")
	git(repo, "commit", "-m", "Initial commit")
	git(repo, "remote", "add", "origin", str(remote))
	git(repo, "push", "-u", "origin", "main")
	return repo
