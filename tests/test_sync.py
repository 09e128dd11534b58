"""Tests for syncing stream definitions from planning markdown."""

from __future__ import annotations

from pathlib import Path

from helpers import FakeGit, make_stream

from stream_status.db import Database
from stream_status.models import WorktreeInfo
from stream_status.sync import parse_frontmatter, parse_stream_markdown, sync_from_files

FULL_DOC = """---
title: "Auth service"
stream_number: 0001
category: backend
priority: high
status: active
phases: design, build, ship
---

# Ignored heading
"""


def _plan_dir(root: Path) -> Path:
	path = root / ".project" / "plan" / "streams"
	path.mkdir(parents=True)
	return path


class TestParseFrontmatter:
	def test_key_values_unquoted(self) -> None:
		meta = parse_frontmatter(FULL_DOC)
		assert meta["title"] == "Auth service"
		assert meta["stream_number"] == "0001"
		assert meta["phases"] == "design, build, ship"

	def test_no_frontmatter(self) -> None:
		assert parse_frontmatter("# Just a heading\n") == {}


class TestParseStreamMarkdown:
	def test_full_frontmatter(self) -> None:
		definition = parse_stream_markdown(FULL_DOC, "stream-0001-auth", {}, "/wt")
		assert definition.title == "Auth service"
		assert definition.stream_number == "0001"
		assert definition.priority == "high"
		assert definition.phases == ["design", "build", "ship"]
		assert definition.branch == "stream-0001-auth"
		assert definition.worktree_path == "/wt/stream-0001-auth"

	def test_fallbacks(self) -> None:
		definition = parse_stream_markdown("# Dashboard UI\n\nBody", "stream-0042-ui", {}, "/wt")
		assert definition.title == "Dashboard UI"
		assert definition.stream_number == "0042"
		assert definition.category == "backend"
		assert definition.priority == "medium"
		assert definition.status == "active"
		assert definition.phases is None

	def test_title_falls_back_to_id(self) -> None:
		definition = parse_stream_markdown("no heading here", "misc", {}, "/wt")
		assert definition.title == "misc"
		assert definition.stream_number == "0000"

	def test_camel_case_stream_number(self) -> None:
		definition = parse_stream_markdown("---\nstreamNumber: 7\n---\n", "x", {}, "/wt")
		assert definition.stream_number == "7"

	def test_live_worktree_path_preferred(self) -> None:
		worktrees = {"stream-0001-auth": WorktreeInfo(path="/elsewhere/auth", branch="stream-0001-auth")}
		definition = parse_stream_markdown(FULL_DOC, "stream-0001-auth", worktrees, "/wt")
		assert definition.worktree_path == "/elsewhere/auth"


class TestSyncFromFiles:
	async def test_imports_files_and_readme_dirs(self, db: Database, tmp_path: Path) -> None:
		plan = _plan_dir(tmp_path)
		(plan / "stream-0001-auth.md").write_text(FULL_DOC)
		(plan / "stream-0002-ui").mkdir()
		(plan / "stream-0002-ui" / "README.md").write_text("# Dashboard UI\n")
		(plan / "notes.txt").write_text("ignored")

		fake = FakeGit(worktrees={
			"main": WorktreeInfo(path=str(tmp_path), branch="main", is_main=True),
			"stream-0002-ui": WorktreeInfo(path="/wt/stream-0002-ui", branch="stream-0002-ui"),
		})
		result = await sync_from_files(db, fake, tmp_path, tmp_path / "worktrees")

		assert result.synced == 2
		assert result.skipped == 1
		assert result.errors == []
		assert result.worktrees_discovered == 1
		auth = db.get_stream("stream-0001-auth")
		assert auth is not None
		assert auth.title == "Auth service"
		assert auth.progress == 0
		assert auth.worktree_path == str(tmp_path / "worktrees" / "stream-0001-auth")
		ui = db.get_stream("stream-0002-ui")
		assert ui is not None
		assert ui.worktree_path == "/wt/stream-0002-ui"
		history = db.get_stream_history("stream-0001-auth")
		assert [h.event_type for h in history] == ["created"]

	async def test_existing_streams_not_overwritten(self, db: Database, tmp_path: Path) -> None:
		plan = _plan_dir(tmp_path)
		(plan / "stream-0001-auth.md").write_text(FULL_DOC)
		db.insert_stream(make_stream(title="Renamed", progress=60))

		result = await sync_from_files(db, FakeGit(), tmp_path, tmp_path / "worktrees")
		assert result.synced == 0
		assert result.skipped == 1
		stream = db.get_stream("stream-0001-auth")
		assert stream is not None
		assert stream.title == "Renamed"
		assert stream.progress == 60

	async def test_dir_without_readme_skipped(self, db: Database, tmp_path: Path) -> None:
		plan = _plan_dir(tmp_path)
		(plan / "empty-stream").mkdir()
		result = await sync_from_files(db, FakeGit(), tmp_path, tmp_path / "worktrees")
		assert result.synced == 0
		assert result.skipped == 1

	async def test_missing_directory(self, db: Database, tmp_path: Path) -> None:
		result = await sync_from_files(db, FakeGit(), tmp_path, tmp_path / "worktrees")
		assert result.synced == 0
		assert result.errors == []
		assert db.get_all_streams() == []

	async def test_unreadable_file_recorded(self, db: Database, tmp_path: Path) -> None:
		plan = _plan_dir(tmp_path)
		(plan / "bad.md").write_bytes(b"\xff\xfe\xfa")
		(plan / "good.md").write_text("# Good\n")
		result = await sync_from_files(db, FakeGit(), tmp_path, tmp_path / "worktrees")
		assert result.synced == 1
		assert len(result.errors) == 1
		assert result.errors[0].startswith("bad: ")
