"""Data models for stream-status state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

MAIN_STREAM_ID = "main"

STREAM_STATUSES = ("initializing", "active", "blocked", "paused", "completed", "archived")
STREAM_CATEGORIES = ("frontend", "backend", "infrastructure", "testing", "documentation", "refactoring")
STREAM_PRIORITIES = ("critical", "high", "medium", "low")
HISTORY_EVENT_TYPES = ("created", "status_changed", "progress_updated", "completed", "archived")
JOB_STATUSES = ("pending", "processing", "completed", "failed")

# Streams that still count as "in flight" for the reconciler
LIVE_STATUSES = frozenset({"active", "blocked", "paused"})

BulkOutcome = Literal["succeeded", "failed", "skipped"]


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


@dataclass
class RecentActivity:
	"""Most recent commit on a stream, for list views."""

	last_commit: str = ""
	files_changed: int = 0
	last_commit_time: str = ""  # relative, e.g. "3 hours ago"


@dataclass
class Stream:
	"""A unit of isolated development work living in its own worktree."""

	id: str = ""
	stream_number: str = ""
	title: str = ""
	category: str = "backend"
	priority: str = "medium"
	status: str = "initializing"
	progress: int = 0
	current_phase: int | None = None
	worktree_path: str = ""
	branch: str = ""
	blocked_by: str | None = None
	created_at: str = field(default_factory=_now_iso)
	updated_at: str = field(default_factory=_now_iso)
	completed_at: str | None = None
	phases: list[str] | None = None
	last_file_change: str | None = None
	recent_activity: RecentActivity | None = None


@dataclass
class Commit:
	"""One commit attributed to a stream."""

	stream_id: str = ""
	commit_hash: str = ""
	message: str = ""
	author: str = ""
	files_changed: int = 0
	timestamp: str = field(default_factory=_now_iso)
	id: int | None = None
	# Populated by joins in get_recent_commits
	stream_number: str = ""
	stream_title: str = ""


@dataclass
class HistoryEvent:
	"""Append-only audit record of a stream transition."""

	stream_id: str = ""
	event_type: str = "status_changed"
	old_value: str | None = None
	new_value: str | None = None
	timestamp: str = field(default_factory=_now_iso)
	id: int | None = None


@dataclass
class SummaryJob:
	"""Deferred summarization work queued when a stream retires."""

	stream_id: str = ""
	stream_number: str = ""
	stream_title: str = ""
	stream_category: str = ""
	stream_branch: str = ""
	stream_worktree_path: str = ""
	stream_created_at: str = ""
	stream_completed_at: str | None = None
	user_summary: str = ""
	history_file_path: str = ""
	status: str = "pending"  # pending/processing/completed/failed
	attempts: int = 0
	max_attempts: int = 3
	error_message: str | None = None
	created_at: str = field(default_factory=_now_iso)
	started_at: str | None = None
	completed_at: str | None = None
	id: int | None = None


@dataclass
class QuickStats:
	"""Headline counters for the dashboard."""

	active_streams: int = 0
	in_progress: int = 0
	blocked: int = 0
	ready_to_start: int = 0
	completed_today: int = 0
	total_commits: int = 0
	commits_today: int = 0


@dataclass
class WorktreeInfo:
	"""A live git worktree as reported by `git worktree list`."""

	path: str
	branch: str
	commit: str = ""
	is_main: bool = False


@dataclass
class ReconciliationEntry:
	"""Classification of one stream (or orphan worktree)."""

	stream_id: str
	reason: str
	title: str = ""
	branch: str = ""
	worktree_path: str = ""
	previous_status: str | None = None
	new_status: str | None = None


@dataclass
class ReconciliationSummary:
	total_in_db: int = 0
	total_worktrees: int = 0
	active: int = 0
	completed: int = 0
	stale: int = 0
	orphaned: int = 0


@dataclass
class ReconciliationResult:
	"""Four-bucket output of a reconciliation pass."""

	active: list[ReconciliationEntry] = field(default_factory=list)
	completed: list[ReconciliationEntry] = field(default_factory=list)
	stale: list[ReconciliationEntry] = field(default_factory=list)
	orphaned: list[ReconciliationEntry] = field(default_factory=list)
	errors: list[dict[str, str]] = field(default_factory=list)
	summary: ReconciliationSummary = field(default_factory=ReconciliationSummary)


@dataclass
class RetirementResult:
	"""Outcome of retiring one stream.

	success is derived from errors; it is never set independently.
	"""

	stream_id: str
	worktree_deleted: bool = False
	archive_written: bool = False
	plan_files_cleaned_up: bool = False
	summary_job_queued: bool = False
	archive_path: str | None = None
	errors: list[str] = field(default_factory=list)

	@property
	def success(self) -> bool:
		return not self.errors


@dataclass
class BulkRetirementItem:
	"""Per-stream entry of a bulk retirement."""

	stream_id: str
	outcome: BulkOutcome
	deleted: bool = False
	error: str | None = None
	retirement: RetirementResult | None = None


@dataclass
class ScanResult:
	scanned: int = 0
	commits_added: int = 0
	errors: int = 0


@dataclass
class SyncResult:
	synced: int = 0
	skipped: int = 0
	errors: list[str] = field(default_factory=list)
	worktrees_discovered: int = 0
