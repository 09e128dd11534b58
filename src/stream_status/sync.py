"""Sync stream definitions from .project/plan/streams/ markdown into the database."""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from stream_status.db import Database
from stream_status.models import HistoryEvent, Stream, SyncResult, WorktreeInfo

logger = logging.getLogger(__name__)

PLAN_STREAMS_DIR = Path(".project") / "plan" / "streams"

_FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---", re.DOTALL)
_FRONTMATTER_LINE_RE = re.compile(r"^(\w+):\s*(.+)$")
_HEADING_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_STREAM_NUMBER_RE = re.compile(r"stream-(\d+)")


class WorktreeLister(Protocol):
	async def list_worktrees(self) -> dict[str, WorktreeInfo]: ...


@dataclass
class StreamDefinition:
	"""Stream metadata parsed from a planning markdown file."""

	stream_id: str
	stream_number: str
	title: str
	worktree_path: str
	branch: str
	category: str = "backend"
	priority: str = "medium"
	status: str = "active"
	phases: list[str] | None = field(default=None)

	def to_stream(self) -> Stream:
		return Stream(
			id=self.stream_id,
			stream_number=self.stream_number,
			title=self.title,
			category=self.category,
			priority=self.priority,
			status=self.status,
			progress=0,
			worktree_path=self.worktree_path,
			branch=self.branch,
			phases=self.phases,
		)


def parse_frontmatter(content: str) -> dict[str, str]:
	"""Parse a leading `---` block of `key: value` lines. Surrounding quotes are stripped."""
	match = _FRONTMATTER_RE.match(content)
	if not match:
		return {}
	values: dict[str, str] = {}
	for line in match.group(1).splitlines():
		line_match = _FRONTMATTER_LINE_RE.match(line.strip())
		if line_match:
			values[line_match.group(1)] = line_match.group(2).strip().strip("\"'")
	return values


def parse_stream_markdown(
	content: str,
	stream_id: str,
	worktrees: dict[str, WorktreeInfo],
	worktree_root: str | Path,
) -> StreamDefinition:
	meta = parse_frontmatter(content)

	title = meta.get("title")
	if not title:
		heading = _HEADING_RE.search(content)
		title = heading.group(1).strip() if heading else stream_id

	stream_number = meta.get("stream_number") or meta.get("streamNumber")
	if not stream_number:
		number_match = _STREAM_NUMBER_RE.search(stream_id)
		stream_number = number_match.group(1) if number_match else "0000"

	info = worktrees.get(stream_id)
	worktree_path = info.path if info else str(Path(worktree_root) / stream_id)

	phases = None
	if meta.get("phases"):
		phases = [p.strip() for p in meta["phases"].split(",") if p.strip()]

	return StreamDefinition(
		stream_id=stream_id,
		stream_number=stream_number,
		title=title,
		worktree_path=worktree_path,
		branch=meta.get("branch") or stream_id,
		category=meta.get("category") or "backend",
		priority=meta.get("priority") or "medium",
		status=meta.get("status") or "active",
		phases=phases,
	)


def _find_stream_files(streams_dir: Path, result: SyncResult) -> list[tuple[str, Path]]:
	"""(stream_id, markdown path) pairs: dir/README.md or top-level *.md."""
	found: list[tuple[str, Path]] = []
	for entry in sorted(streams_dir.iterdir()):
		if entry.is_dir():
			readme = entry / "README.md"
			if readme.is_file():
				found.append((entry.name, readme))
			else:
				result.skipped += 1
		elif entry.suffix == ".md":
			found.append((entry.stem, entry))
		else:
			result.skipped += 1
	return found


async def sync_from_files(
	db: Database,
	git: WorktreeLister,
	project_root: str | Path,
	worktree_root: str | Path,
) -> SyncResult:
	"""Insert streams for planning files not yet in the database.

	Existing stream ids are counted as skipped, never overwritten.
	"""
	result = SyncResult()
	worktrees = await git.list_worktrees()
	result.worktrees_discovered = max(len(worktrees) - 1, 0)

	streams_dir = Path(project_root) / PLAN_STREAMS_DIR
	if not streams_dir.is_dir():
		logger.warning("No stream planning directory at %s", streams_dir)
		return result

	for stream_id, md_path in _find_stream_files(streams_dir, result):
		try:
			definition = parse_stream_markdown(
				md_path.read_text(encoding="utf-8"), stream_id, worktrees, worktree_root,
			)
		except (OSError, UnicodeDecodeError) as exc:
			result.errors.append(f"{stream_id}: {exc}")
			logger.error("Failed to parse %s: %s", md_path, exc)
			continue

		try:
			db.insert_stream(definition.to_stream())
		except sqlite3.IntegrityError as exc:
			if "UNIQUE" in str(exc):
				result.skipped += 1
				continue
			result.errors.append(f"{stream_id}: {exc}")
			logger.error("Failed to add stream %s: %s", stream_id, exc)
			continue
		db.add_history_event(HistoryEvent(stream_id=stream_id, event_type="created"))
		result.synced += 1

	logger.info(
		"Synced %d streams (%d skipped, %d errors)",
		result.synced, result.skipped, len(result.errors),
	)
	return result
