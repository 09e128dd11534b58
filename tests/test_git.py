"""Tests for git output parsing and the async GitClient."""

from __future__ import annotations

from pathlib import Path

import pytest
from helpers import git

from stream_status.git import GitClient, parse_merged_branches, parse_worktree_porcelain

PORCELAIN = """worktree /repo
HEAD 1111111111111111111111111111111111111111
branch refs/heads/main

worktree /worktrees/stream-0001-auth
HEAD 2222222222222222222222222222222222222222
branch refs/heads/stream-0001-auth

worktree /worktrees/detached
HEAD 3333333333333333333333333333333333333333
detached

worktree /repo.git
bare
"""


class TestParseWorktreePorcelain:
	def test_main_and_stream_entries(self) -> None:
		worktrees = parse_worktree_porcelain(PORCELAIN)
		assert set(worktrees) == {"main", "stream-0001-auth"}
		main = worktrees["main"]
		assert main.path == "/repo"
		assert main.is_main is True
		stream = worktrees["stream-0001-auth"]
		assert stream.branch == "stream-0001-auth"
		assert stream.path == "/worktrees/stream-0001-auth"
		assert stream.commit == "2" * 40
		assert stream.is_main is False

	def test_master_is_main(self) -> None:
		output = "worktree /repo\nHEAD abc\nbranch refs/heads/master\n"
		worktrees = parse_worktree_porcelain(output)
		assert worktrees["main"].branch == "master"

	def test_empty_output(self) -> None:
		assert parse_worktree_porcelain("") == {}


class TestParseMergedBranches:
	def test_strips_markers_and_trunk(self) -> None:
		output = "  feature-a\n* main\n+ stream-0002-ui\n  master\n\n"
		assert parse_merged_branches(output) == {"feature-a", "stream-0002-ui"}


class TestGitClient:
	async def test_list_worktrees(self, git_repo: Path, tmp_path: Path) -> None:
		wt = tmp_path / "worktrees" / "stream-0002-ui"
		git(git_repo, "worktree", "add", str(wt), "-b", "stream-0002-ui")

		worktrees = await GitClient(git_repo).list_worktrees()
		assert set(worktrees) == {"main", "stream-0002-ui"}
		assert worktrees["stream-0002-ui"].branch == "stream-0002-ui"
		assert Path(worktrees["stream-0002-ui"].path).resolve() == wt.resolve()
		assert worktrees["main"].is_main

	async def test_list_merged_branches(self, git_repo: Path) -> None:
		git(git_repo, "branch", "merged-feature")
		git(git_repo, "checkout", "-b", "open-feature")
		(git_repo / "new.txt").write_text("x\n")
		git(git_repo, "add", ".")
		git(git_repo, "commit", "-m", "unmerged work")
		git(git_repo, "checkout", "main")

		merged = await GitClient(git_repo).list_merged_branches()
		assert "merged-feature" in merged
		assert "open-feature" not in merged
		assert "main" not in merged

	async def test_log_commits(self, git_repo: Path) -> None:
		output = await GitClient(git_repo).log_commits("main", max_count=5)
		assert output is not None
		assert "|Initial commit|" in output

	async def test_failure_returns_empty(self, tmp_path: Path) -> None:
		client = GitClient(tmp_path)
		assert await client.list_worktrees() == {}
		assert await client.list_merged_branches() == set()
		assert await client.log_commits("main") is None

	async def test_run_reports_failure(self, git_repo: Path) -> None:
		ok, output = await GitClient(git_repo).run("checkout", "no-such-branch")
		assert ok is False
		assert output

	async def test_missing_cwd(self, tmp_path: Path) -> None:
		ok, _ = await GitClient(tmp_path / "gone").run("status")
		assert ok is False

	async def test_queries_ignore_stderr_noise(self, git_repo: Path, monkeypatch: pytest.MonkeyPatch) -> None:
		git(git_repo, "branch", "merged-feature")
		monkeypatch.setenv("GIT_TRACE", "1")
		client = GitClient(git_repo)

		assert await client.list_merged_branches() == {"merged-feature"}
		assert set(await client.list_worktrees()) == {"main"}
		output = await client.log_commits("main", max_count=5)
		assert output is not None
		assert "trace:" not in output

	async def test_run_merges_stderr_unless_asked(self, git_repo: Path) -> None:
		client = GitClient(git_repo)
		ok, merged = await client.run("checkout", "-b", "first")
		assert ok
		assert "Switched to a new branch 'first'" in merged

		ok, separate = await client.run("checkout", "-b", "second", merge_stderr=False)
		assert ok
		assert separate == ""

	async def test_separate_stderr_returned_on_failure(self, git_repo: Path) -> None:
		ok, output = await GitClient(git_repo).run("checkout", "no-such-branch", merge_stderr=False)
		assert ok is False
		assert "no-such-branch" in output
