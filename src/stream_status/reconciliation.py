"""Worktree reconciliation -- align persisted stream status with live git state.

Every persisted stream is classified into exactly one bucket, first match wins:

1. completed -- its branch is merged into main (even if the worktree still exists)
2. stale     -- no live worktree and no directory at its worktree path
3. active    -- otherwise

Live worktrees with no persisted stream are reported as orphaned. The
classification is identical with and without dry_run; only the writes differ.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from stream_status.db import Database
from stream_status.models import (
	LIVE_STATUSES,
	MAIN_STREAM_ID,
	HistoryEvent,
	ReconciliationEntry,
	ReconciliationResult,
	Stream,
	WorktreeInfo,
)

logger = logging.getLogger(__name__)

REASON_MERGED = "Branch merged to main"
REASON_STALE = "Worktree does not exist"
REASON_ACTIVE = "Worktree exists and branch not merged"
REASON_ORPHANED = "Worktree exists but no stream in database"

REPORT_SECTION_LIMIT = 10


class WorktreeSource(Protocol):
	"""The slice of GitClient the reconciler needs."""

	async def list_worktrees(self) -> dict[str, WorktreeInfo]: ...

	async def list_merged_branches(self, target: str | None = None) -> set[str]: ...


def _set_status(db: Database, stream: Stream, new_status: str) -> None:
	"""Persist a status transition and its history event atomically."""
	with db.transaction():
		if new_status == "completed":
			db.complete_stream(stream.id, commit=False)
		else:
			db.update_stream(stream.id, status=new_status, commit=False)
		db.add_history_event(
			HistoryEvent(
				stream_id=stream.id,
				event_type="status_changed",
				old_value=stream.status,
				new_value=new_status,
			),
			commit=False,
		)
	logger.info("Stream %s: %s -> %s", stream.id, stream.status, new_status)


def classify_stream(
	stream: Stream,
	worktrees: dict[str, WorktreeInfo],
	merged_branches: set[str],
	*,
	auto_archive_stale: bool = False,
) -> tuple[str, ReconciliationEntry]:
	"""Return (bucket, entry) for one stream. Pure: no I/O beyond a path check."""
	entry = ReconciliationEntry(
		stream_id=stream.id,
		title=stream.title,
		branch=stream.branch,
		worktree_path=stream.worktree_path,
		previous_status=stream.status,
		reason="",
	)
	if stream.branch and stream.branch in merged_branches:
		entry.new_status = "completed"
		entry.reason = REASON_MERGED
		return "completed", entry

	has_worktree = stream.id in worktrees or (
		bool(stream.worktree_path) and Path(stream.worktree_path).exists()
	)
	if not has_worktree:
		entry.new_status = "archived" if auto_archive_stale else None
		entry.reason = REASON_STALE
		return "stale", entry

	# Only initializing streams are promoted; blocked, paused and archived stay put
	entry.new_status = None if stream.status in LIVE_STATUSES | {"archived"} else "active"
	entry.reason = REASON_ACTIVE
	return "active", entry


async def reconcile_worktrees(
	db: Database,
	git: WorktreeSource,
	*,
	dry_run: bool = True,
	auto_archive_stale: bool = False,
	auto_add_orphaned: bool = False,
) -> ReconciliationResult:
	"""Classify every persisted stream against live worktrees and merged branches.

	With dry_run=False, merged streams are completed, stale streams are archived
	(only when auto_archive_stale is set), and initializing streams with a live
	worktree become active; archived streams are never revived.
	auto_add_orphaned is accepted but has no effect: orphans are reported,
	never imported.
	"""
	result = ReconciliationResult()
	streams = db.get_all_streams()
	worktrees = await git.list_worktrees()
	merged = await git.list_merged_branches()

	result.summary.total_in_db = len(streams)
	result.summary.total_worktrees = len([k for k in worktrees if k != MAIN_STREAM_ID])
	matched: set[str] = {MAIN_STREAM_ID}

	for stream in streams:
		if stream.id in worktrees:
			matched.add(stream.id)
		bucket, entry = classify_stream(
			stream, worktrees, merged, auto_archive_stale=auto_archive_stale,
		)
		# Bucketed before the write; a failed write only adds to errors
		getattr(result, bucket).append(entry)
		if dry_run or not entry.new_status or entry.new_status == stream.status:
			continue
		try:
			_set_status(db, stream, entry.new_status)
		except Exception as exc:
			logger.error("Reconciliation failed for stream %s: %s", stream.id, exc)
			result.errors.append({"stream_id": stream.id, "error": str(exc)})

	for key, info in sorted(worktrees.items()):
		if key in matched or info.is_main:
			continue
		result.orphaned.append(
			ReconciliationEntry(
				stream_id=key,
				branch=info.branch,
				worktree_path=info.path,
				reason=REASON_ORPHANED,
			)
		)

	result.summary.active = len(result.active)
	result.summary.completed = len(result.completed)
	result.summary.stale = len(result.stale)
	result.summary.orphaned = len(result.orphaned)
	logger.info(
		"Reconciliation (%s): %d active, %d completed, %d stale, %d orphaned, %d errors",
		"dry run" if dry_run else "applied",
		result.summary.active, result.summary.completed,
		result.summary.stale, result.summary.orphaned, len(result.errors),
	)
	return result


def _format_section(title: str, entries: list[ReconciliationEntry], lines: list[str]) -> None:
	if not entries:
		return
	lines.append(f"## {title} ({len(entries)})")
	lines.append("")
	for entry in entries[:REPORT_SECTION_LIMIT]:
		transition = ""
		if entry.previous_status and entry.new_status and entry.new_status != entry.previous_status:
			transition = f" [{entry.previous_status} -> {entry.new_status}]"
		label = f"{entry.stream_id}: {entry.title}" if entry.title else entry.stream_id
		lines.append(f"- **{label}**{transition}")
		lines.append(f"  {entry.reason}")
	if len(entries) > REPORT_SECTION_LIMIT:
		lines.append(f"- ... and {len(entries) - REPORT_SECTION_LIMIT} more")
	lines.append("")


def format_reconciliation_result(result: ReconciliationResult, dry_run: bool) -> str:
	"""Render a reconciliation result as a markdown report."""
	s = result.summary
	lines = [
		"# Worktree Reconciliation Report",
		"",
		f"**Mode**: {'Dry run (no changes applied)' if dry_run else 'Live (changes applied)'}",
		"",
		"## Summary",
		"",
		f"- Streams in database: {s.total_in_db}",
		f"- Worktrees (excluding main): {s.total_worktrees}",
		f"- Active: {s.active}",
		f"- Completed (merged): {s.completed}",
		f"- Stale (no worktree): {s.stale}",
		f"- Orphaned worktrees: {s.orphaned}",
		"",
	]
	_format_section("Completed", result.completed, lines)
	_format_section("Stale", result.stale, lines)
	_format_section("Orphaned", result.orphaned, lines)
	_format_section("Active", result.active, lines)
	if result.errors:
		lines.append(f"## Errors ({len(result.errors)})")
		lines.append("")
		for err in result.errors:
			lines.append(f"- {err['stream_id']}: {err['error']}")
		lines.append("")
	if dry_run and (s.completed or s.stale):
		lines.append("Run without dry run to apply these changes.")
	return "\n".join(lines).rstrip() + "\n"
