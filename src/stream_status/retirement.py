"""Stream retirement -- destructive cleanup of a completed stream.

Steps run in a fixed order and never short-circuit one another:

1. write and push an archive report to .project/history/
2. queue a summary job referencing that archive
3. remove the git worktree (and, best effort, its local branch)
4. remove and push the stream's planning files

Each failing step appends a prefixed message to RetirementResult.errors;
success is simply "no step reported an error".
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Protocol, TypeVar

from stream_status.db import Database
from stream_status.models import (
	BulkRetirementItem,
	HistoryEvent,
	RetirementResult,
	Stream,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

HISTORY_DIR = Path(".project") / "history"
PLAN_STREAMS_DIR = Path(".project") / "plan" / "streams"
MERGE_LOOKUP_DEPTH = 20
RETIRED_HISTORY_VALUE = "retired and deleted from database"

ERR_ARCHIVE = "Archive write failed: "
ERR_SUMMARY = "Failed to queue summary job: "
ERR_WORKTREE = "Worktree deletion failed: "
ERR_PLAN = "Plan files cleanup failed: "
ERR_IN_PROGRESS = "Retirement already in progress"


class GitRunner(Protocol):
	async def run(self, *args: str, cwd: str | Path | None = None) -> tuple[bool, str]: ...


@dataclass
class RetirementOptions:
	"""Which retirement steps to run, and where the project lives."""

	project_root: str = "."
	worktree_root: str = ""  # defaults to <project_root>/../.worktrees
	delete_worktree: bool = True
	cleanup_plan_files: bool = True
	write_archive: bool = True
	queue_summary: bool = True
	main_branch: str = "main"
	remote: str = "origin"

	@property
	def resolved_worktree_root(self) -> Path:
		if self.worktree_root:
			return Path(self.worktree_root)
		return Path(self.project_root) / ".." / ".worktrees"


async def _git(git: GitRunner, *args: str, cwd: str | Path) -> str:
	"""Run git and raise RuntimeError with its output when it fails."""
	ok, output = await git.run(*args, cwd=cwd)
	if not ok:
		raise RuntimeError(output.strip() or f"git {args[0]} failed")
	return output


async def _attempt(result: RetirementResult, prefix: str, step: Callable[[], Awaitable[T]]) -> T | None:
	"""Run one step, recording its failure under prefix instead of raising."""
	try:
		return await step()
	except Exception as exc:
		result.errors.append(f"{prefix}{exc}")
		logger.error("[retirement] %s: %s%s", result.stream_id, prefix, exc)
		return None


def render_archive_report(
	stream: Stream,
	summary: str,
	merge_commit: str | None = None,
	now: datetime | None = None,
) -> str:
	"""Markdown archive record. Labels and their order are grepped by tooling; keep them stable."""
	now = now or datetime.now(timezone.utc)
	return f"""# Stream Retired: {stream.id}

**Date**: {now.date().isoformat()}
**Stream**: {stream.stream_number} - {stream.title}
**Branch**: {stream.branch}
**Category**: {stream.category}
**Priority**: {stream.priority}
**Status**: Retired

---

## Summary

{summary}

## Stream Details

- **Created**: {stream.created_at}
- **Completed**: {stream.completed_at or 'N/A'}
- **Worktree Path**: {stream.worktree_path}

## Merge Details

- **Merge Commit**: {merge_commit or 'N/A'}
- **Merge Type**: Fast-forward
- **Conflicts**: Resolved in worktree (if any)

---

**Retired by**: Stream Status Dashboard
**Archived**: {now.isoformat()}
"""


async def find_merge_commit(git: GitRunner, project_root: str, stream_id: str) -> str | None:
	"""Best-effort: newest of the last 20 commits whose subject or refs mention stream_id."""
	ok, output = await git.run(
		"log", "-n", str(MERGE_LOOKUP_DEPTH), "--pretty=format:%H%x09%D%x09%s", cwd=project_root,
	)
	if not ok:
		return None
	for line in output.splitlines():
		commit_hash, _, rest = line.partition("\t")
		if stream_id in rest:
			return commit_hash.strip()
	return None


async def _write_archive(
	git: GitRunner, stream: Stream, summary: str, options: RetirementOptions,
) -> str:
	root = Path(options.project_root)
	now = datetime.now(timezone.utc)
	history_dir = root / HISTORY_DIR
	history_dir.mkdir(parents=True, exist_ok=True)
	archive_path = history_dir / f"{now.strftime('%Y%m%d')}_{stream.id}-RETIRED.md"

	merge_commit = await find_merge_commit(git, options.project_root, stream.id)
	archive_path.write_text(render_archive_report(stream, summary, merge_commit, now))

	await _git(git, "add", str(archive_path), cwd=root)
	await _git(git, "commit", "-m", f"docs: Archive retired stream {stream.id}", "--no-verify", cwd=root)
	await _git(git, "push", options.remote, options.main_branch, cwd=root)
	logger.info("[retirement] Archive written: %s", archive_path.name)
	return str(archive_path)


async def _delete_worktree(git: GitRunner, stream: Stream, options: RetirementOptions) -> bool:
	worktree_path = options.resolved_worktree_root / stream.id
	root = options.project_root
	if not worktree_path.exists():
		logger.info("[retirement] Worktree already removed: %s", worktree_path)
		return True

	ok, output = await git.run("worktree", "remove", str(worktree_path), "--force", cwd=root)
	if not ok:
		logger.info("[retirement] git worktree remove failed (%s), removing directory", output.strip())
		shutil.rmtree(worktree_path)
		await _git(git, "worktree", "prune", cwd=root)

	if stream.branch:
		ok, output = await git.run("branch", "-d", stream.branch, cwd=root)
		if ok:
			logger.info("[retirement] Local branch deleted: %s", stream.branch)
		else:
			logger.info("[retirement] Could not delete branch %s: %s", stream.branch, output.strip())
	return True


async def _cleanup_plan_files(git: GitRunner, stream: Stream, options: RetirementOptions) -> bool:
	root = Path(options.project_root)
	plan_dir = root / PLAN_STREAMS_DIR / stream.id
	plan_file = root / PLAN_STREAMS_DIR / f"{stream.id}.md"

	cleaned = False
	if plan_dir.exists():
		await _git(git, "rm", "-rf", str(plan_dir), cwd=root)
		cleaned = True
	if plan_file.exists():
		await _git(git, "rm", "-f", str(plan_file), cwd=root)
		cleaned = True
	if not cleaned:
		logger.info("[retirement] No planning files to clean up for %s", stream.id)
		return True

	await _git(git, "commit", "-m", f"chore: Clean up {stream.id} planning files", "--no-verify", cwd=root)
	await _git(git, "push", options.remote, options.main_branch, cwd=root)
	logger.info("[retirement] Planning files cleaned up for %s", stream.id)
	return True


async def retire_stream(
	stream: Stream,
	summary: str,
	git: GitRunner,
	options: RetirementOptions,
	db: Database | None = None,
) -> RetirementResult:
	"""Run all enabled retirement steps for a stream.

	Does not check the stream's status; callers only retire completed streams.
	"""
	result = RetirementResult(stream_id=stream.id)

	if options.write_archive:
		result.archive_path = await _attempt(
			result, ERR_ARCHIVE, lambda: _write_archive(git, stream, summary, options),
		)
		result.archive_written = result.archive_path is not None

	if options.queue_summary and db is not None and result.archive_path:
		archive_path = result.archive_path

		async def _queue() -> int:
			return db.queue_summary_job(stream, summary, archive_path)

		job_id = await _attempt(result, ERR_SUMMARY, _queue)
		if job_id is not None:
			result.summary_job_queued = True
			logger.info("[retirement] Queued summary job #%d for %s", job_id, stream.id)

	if options.delete_worktree:
		deleted = await _attempt(result, ERR_WORKTREE, lambda: _delete_worktree(git, stream, options))
		result.worktree_deleted = bool(deleted)

	if options.cleanup_plan_files:
		cleaned = await _attempt(result, ERR_PLAN, lambda: _cleanup_plan_files(git, stream, options))
		result.plan_files_cleaned_up = bool(cleaned)

	if result.success:
		logger.info("[retirement] Stream %s retired", stream.id)
	else:
		logger.warning("[retirement] Stream %s retired with %d error(s)", stream.id, len(result.errors))
	return result


async def retire_and_remove(
	db: Database,
	git: GitRunner,
	stream: Stream,
	summary: str,
	options: RetirementOptions,
) -> RetirementResult:
	"""Retire a stream, then delete its record whatever the cleanup outcome."""
	result = await retire_stream(stream, summary, git, options, db=db)
	db.add_history_event(HistoryEvent(
		stream_id=stream.id,
		event_type="completed",
		old_value=stream.status,
		new_value=RETIRED_HISTORY_VALUE,
	))
	db.delete_stream(stream.id)
	return result


async def retire_many(
	db: Database,
	git: GitRunner,
	stream_ids: list[str],
	summary: str,
	options: RetirementOptions,
	in_progress: set[str] | None = None,
) -> list[BulkRetirementItem]:
	"""Retire each stream independently; one bad id never aborts the batch.

	Ids found in in_progress are reported as failed instead of retired a second
	time. Each id is held in the set while its own retirement runs.
	"""
	items: list[BulkRetirementItem] = []
	for stream_id in stream_ids:
		try:
			stream = db.get_stream(stream_id)
			if stream is None:
				items.append(BulkRetirementItem(stream_id=stream_id, outcome="failed", error="Not found"))
				continue
			if stream.status == "archived":
				items.append(BulkRetirementItem(stream_id=stream_id, outcome="skipped", error="Already retired"))
				continue
			if stream.status != "completed":
				items.append(BulkRetirementItem(
					stream_id=stream_id,
					outcome="failed",
					error=f"Cannot retire: status is '{stream.status}', must be 'completed'",
				))
				continue
			if in_progress is not None:
				if stream_id in in_progress:
					items.append(BulkRetirementItem(stream_id=stream_id, outcome="failed", error=ERR_IN_PROGRESS))
					continue
				in_progress.add(stream_id)
			try:
				result = await retire_and_remove(db, git, stream, summary, options)
			finally:
				if in_progress is not None:
					in_progress.discard(stream_id)
			items.append(BulkRetirementItem(
				stream_id=stream_id,
				outcome="succeeded" if result.success else "failed",
				deleted=True,
				error="; ".join(result.errors) or None,
				retirement=result,
			))
		except Exception as exc:
			logger.error("Bulk retirement failed for %s: %s", stream_id, exc)
			items.append(BulkRetirementItem(stream_id=stream_id, outcome="failed", error=str(exc)))
	return items
