"""Commit scanner -- derives commit records from bounded git logs."""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from stream_status.db import Database
from stream_status.models import MAIN_STREAM_ID, Commit, ScanResult, Stream

logger = logging.getLogger(__name__)

WORKTREE_LOG_LIMIT = 50
MAIN_LOG_LIMIT = 20
MAIN_LOG_WINDOW = "7 days ago"

IGNORED_DIRS = frozenset({
	"node_modules", ".git", "dist", "build", ".next", "coverage",
	"__pycache__", ".venv", ".turbo", ".cache",
})

_NUMSTAT_RE = re.compile(r"^\d+\s+\d+\s+")
_BINARY_NUMSTAT_RE = re.compile(r"^-\s+-\s+")


class CommitLogSource(Protocol):
	"""The slice of GitClient the scanner needs."""

	repo_root: str
	main_branch: str

	async def log_commits(
		self,
		rev_range: str,
		*,
		cwd: str | Path | None = None,
		since: str | None = None,
		max_count: int = 50,
	) -> str | None: ...


def _normalize_timestamp(raw: str) -> str:
	try:
		parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
	except ValueError:
		return raw
	if parsed.tzinfo is None:
		parsed = parsed.replace(tzinfo=timezone.utc)
	return parsed.astimezone(timezone.utc).isoformat()


def parse_commit_log(output: str, stream_id: str) -> list[Commit]:
	"""Parse `--pretty=format:%H|%an|%aI|%s| --numstat` output.

	Each header line starts a commit; numstat lines (including "- -" binary
	lines) that follow it up to the next header are counted as files changed.
	"""
	commits: list[Commit] = []
	current: Commit | None = None
	for line in output.strip().splitlines():
		if "|" in line:
			parts = line.split("|")
			if len(parts) < 4:
				continue
			current = Commit(
				stream_id=stream_id,
				commit_hash=parts[0].strip(),
				author=parts[1].strip(),
				timestamp=_normalize_timestamp(parts[2].strip()),
				message=parts[3].strip(),
			)
			commits.append(current)
		elif current is not None and (_NUMSTAT_RE.match(line) or _BINARY_NUMSTAT_RE.match(line)):
			current.files_changed += 1
	return commits


async def scan_worktree(git: CommitLogSource, stream: Stream) -> list[Commit]:
	"""Commits reachable from the worktree's HEAD but not from main.

	A missing worktree or any git/parse failure yields an empty list.
	"""
	if not stream.worktree_path or not Path(stream.worktree_path).exists():
		return []
	try:
		output = await git.log_commits(
			f"{git.main_branch}..HEAD", cwd=stream.worktree_path, max_count=WORKTREE_LOG_LIMIT,
		)
		if not output:
			return []
		return parse_commit_log(output, stream.id)
	except Exception as exc:
		logger.warning("Commit scan failed for %s: %s", stream.id, exc)
		return []


async def scan_main_branch(git: CommitLogSource) -> list[Commit]:
	"""Recent commits on the trunk, tagged with the main sentinel stream."""
	try:
		output = await git.log_commits(
			git.main_branch, cwd=git.repo_root, since=MAIN_LOG_WINDOW, max_count=MAIN_LOG_LIMIT,
		)
		if not output:
			return []
		return parse_commit_log(output, MAIN_STREAM_ID)
	except Exception as exc:
		logger.warning("Main branch scan failed: %s", exc)
		return []


def latest_file_change(root: str | Path) -> str | None:
	"""Newest mtime under root as an ISO timestamp, skipping dependency/build/VCS dirs."""
	root_path = Path(root)
	if not root_path.is_dir():
		return None
	latest = 0.0
	for dirpath, dirnames, filenames in os.walk(root_path):
		dirnames[:] = [d for d in dirnames if d not in IGNORED_DIRS]
		for name in filenames:
			try:
				mtime = os.stat(os.path.join(dirpath, name)).st_mtime
			except OSError:
				continue
			latest = max(latest, mtime)
	if latest == 0.0:
		return None
	return datetime.fromtimestamp(latest, tz=timezone.utc).isoformat()


def _store_commits(db: Database, commits: list[Commit], result: ScanResult) -> None:
	for commit in commits:
		try:
			if db.insert_commit_if_new(commit) is not None:
				result.commits_added += 1
		except Exception as exc:
			result.errors += 1
			logger.error("Failed to insert commit %s for %s: %s", commit.commit_hash, commit.stream_id, exc)


async def scan_all(db: Database, git: CommitLogSource) -> ScanResult:
	"""Scan the trunk and every stream worktree, inserting new commits.

	Safe to repeat: already-recorded commits are skipped by the
	(stream_id, commit_hash) uniqueness constraint.
	"""
	result = ScanResult()
	try:
		if db.ensure_main_stream(git.repo_root):
			logger.info("Created main branch stream entry")
	except Exception as exc:
		logger.error("Failed to create main stream entry: %s", exc)

	_store_commits(db, await scan_main_branch(git), result)

	for stream in db.get_all_streams():
		result.scanned += 1
		try:
			_store_commits(db, await scan_worktree(git, stream), result)
			changed = latest_file_change(stream.worktree_path) if stream.worktree_path else None
			if changed and changed != stream.last_file_change:
				db.update_last_file_change(stream.id, changed)
		except Exception as exc:
			result.errors += 1
			logger.error("Failed to scan commits for stream %s: %s", stream.id, exc)

	logger.debug(
		"Scan complete: %d streams, %d new commits, %d errors",
		result.scanned, result.commits_added, result.errors,
	)
	return result


async def scan_stream(db: Database, git: CommitLogSource, stream_id: str) -> int:
	"""Scan a single stream. Returns commits added; raises LookupError if absent."""
	stream = db.get_stream(stream_id)
	if stream is None:
		raise LookupError(f"Stream not found: {stream_id}")
	added = 0
	for commit in await scan_worktree(git, stream):
		if db.insert_commit_if_new(commit) is not None:
			added += 1
	return added
