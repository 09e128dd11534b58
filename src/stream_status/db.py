"""SQLite database operations for stream-status state."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

from stream_status.models import (
	MAIN_STREAM_ID,
	Commit,
	HistoryEvent,
	QuickStats,
	RecentActivity,
	Stream,
	SummaryJob,
	_now_iso,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS streams (
	id TEXT PRIMARY KEY,
	stream_number TEXT NOT NULL DEFAULT '',
	title TEXT NOT NULL DEFAULT '',
	category TEXT NOT NULL DEFAULT 'backend',
	priority TEXT NOT NULL DEFAULT 'medium',
	status TEXT NOT NULL DEFAULT 'initializing',
	progress INTEGER NOT NULL DEFAULT 0,
	current_phase INTEGER,
	worktree_path TEXT NOT NULL DEFAULT '',
	branch TEXT NOT NULL DEFAULT '',
	blocked_by TEXT REFERENCES streams(id) ON DELETE SET NULL,
	created_at TEXT NOT NULL,
	updated_at TEXT NOT NULL,
	completed_at TEXT,
	phases TEXT
);
CREATE INDEX IF NOT EXISTS idx_streams_status ON streams(status);
CREATE INDEX IF NOT EXISTS idx_streams_updated_at ON streams(updated_at DESC);

CREATE TABLE IF NOT EXISTS commits (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	stream_id TEXT NOT NULL REFERENCES streams(id) ON DELETE CASCADE,
	commit_hash TEXT NOT NULL,
	message TEXT NOT NULL DEFAULT '',
	author TEXT NOT NULL DEFAULT '',
	files_changed INTEGER NOT NULL DEFAULT 0,
	timestamp TEXT NOT NULL,
	UNIQUE(stream_id, commit_hash)
);
CREATE INDEX IF NOT EXISTS idx_commits_stream ON commits(stream_id);
CREATE INDEX IF NOT EXISTS idx_commits_timestamp ON commits(timestamp DESC);

CREATE TABLE IF NOT EXISTS stream_history (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	stream_id TEXT NOT NULL REFERENCES streams(id) ON DELETE CASCADE,
	event_type TEXT NOT NULL,
	old_value TEXT,
	new_value TEXT,
	timestamp TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_stream_history_stream ON stream_history(stream_id);

CREATE TABLE IF NOT EXISTS summary_jobs (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	stream_id TEXT NOT NULL,
	stream_number TEXT NOT NULL DEFAULT '',
	stream_title TEXT NOT NULL DEFAULT '',
	stream_category TEXT NOT NULL DEFAULT '',
	stream_branch TEXT NOT NULL DEFAULT '',
	stream_worktree_path TEXT NOT NULL DEFAULT '',
	stream_created_at TEXT NOT NULL DEFAULT '',
	stream_completed_at TEXT,
	user_summary TEXT NOT NULL DEFAULT '',
	history_file_path TEXT NOT NULL DEFAULT '',
	status TEXT NOT NULL DEFAULT 'pending',
	attempts INTEGER NOT NULL DEFAULT 0,
	max_attempts INTEGER NOT NULL DEFAULT 3,
	error_message TEXT,
	created_at TEXT NOT NULL,
	started_at TEXT,
	completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_summary_jobs_status ON summary_jobs(status);
"""


def format_relative_time(iso_timestamp: str | None, now: datetime | None = None) -> str:
	"""Render an ISO timestamp as "N days/hours/minutes ago" or "just now"."""
	if not iso_timestamp:
		return ""
	try:
		then = datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
	except ValueError:
		return ""
	if then.tzinfo is None:
		then = then.replace(tzinfo=timezone.utc)
	now = now or datetime.now(timezone.utc)
	seconds = int((now - then).total_seconds())
	minutes = seconds // 60
	hours = minutes // 60
	days = hours // 24
	if days > 0:
		return f"{days} day{'s' if days > 1 else ''} ago"
	if hours > 0:
		return f"{hours} hour{'s' if hours > 1 else ''} ago"
	if minutes > 0:
		return f"{minutes} minute{'s' if minutes > 1 else ''} ago"
	return "just now"


def _start_of_today_iso() -> str:
	"""Local midnight, expressed in UTC so it compares with stored timestamps."""
	local_midnight = datetime.now().astimezone().replace(hour=0, minute=0, second=0, microsecond=0)
	return local_midnight.astimezone(timezone.utc).isoformat()


class Database:
	"""SQLite database for stream-status state."""

	def __init__(self, path: str | Path = ":memory:", *, check_same_thread: bool = True) -> None:
		db_path = str(path)
		if db_path != ":memory:":
			Path(db_path).parent.mkdir(parents=True, exist_ok=True)
		self.conn = sqlite3.connect(db_path, check_same_thread=check_same_thread)
		self.conn.row_factory = sqlite3.Row
		logger.debug("Opened database connection: %s", db_path)
		if db_path != ":memory:":
			self.conn.execute("PRAGMA journal_mode=WAL")
			self.conn.execute("PRAGMA busy_timeout=5000")
			logger.debug("WAL mode activated for %s", db_path)
		self.conn.execute("PRAGMA foreign_keys=ON")
		self._create_tables()

	def _create_tables(self) -> None:
		self.conn.executescript(SCHEMA_SQL)
		self._migrate_last_file_change_column()

	def _migrate_last_file_change_column(self) -> None:
		"""Add last_file_change column to streams table (idempotent)."""
		try:
			self.conn.execute("ALTER TABLE streams ADD COLUMN last_file_change TEXT")
			logger.debug("Migration: added column streams.last_file_change")
		except sqlite3.OperationalError as exc:
			if "duplicate column name" in str(exc):
				pass
			else:
				logger.warning("Migration failed for streams.last_file_change: %s", exc)
				raise

	def close(self) -> None:
		logger.debug("Closing database connection")
		self.conn.close()

	def __enter__(self) -> Database:
		return self

	def __exit__(self, *args: object) -> None:
		self.close()

	@contextmanager
	def transaction(self) -> Generator[sqlite3.Connection, None, None]:
		"""Context manager for explicit transactions.

		Commits on success, rolls back on exception.
		"""
		try:
			yield self.conn
		except Exception:
			self.conn.rollback()
			raise
		else:
			self.conn.commit()

	# -- Streams --

	def insert_stream(self, stream: Stream) -> None:
		self.conn.execute(
			"""INSERT INTO streams
			(id, stream_number, title, category, priority, status, progress,
			 current_phase, worktree_path, branch, blocked_by, created_at,
			 updated_at, completed_at, phases, last_file_change)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
			(
				stream.id, stream.stream_number, stream.title, stream.category,
				stream.priority, stream.status, stream.progress, stream.current_phase,
				stream.worktree_path, stream.branch, stream.blocked_by or None,
				stream.created_at, stream.updated_at, stream.completed_at,
				json.dumps(stream.phases) if stream.phases else None,
				stream.last_file_change,
			),
		)
		self.conn.commit()

	def ensure_main_stream(self, project_root: str) -> bool:
		"""Insert the trunk sentinel stream if it is absent. Returns True if inserted."""
		now = _now_iso()
		cursor = self.conn.execute(
			"""INSERT OR IGNORE INTO streams
			(id, stream_number, title, category, priority, status, progress,
			 worktree_path, branch, created_at, updated_at)
			VALUES (?, ?, 'Main Branch', 'infrastructure', 'high', 'active', 100, ?, 'main', ?, ?)""",
			(MAIN_STREAM_ID, MAIN_STREAM_ID, project_root, now, now),
		)
		self.conn.commit()
		return cursor.rowcount > 0

	def get_stream(self, stream_id: str) -> Stream | None:
		row = self.conn.execute("SELECT * FROM streams WHERE id=?", (stream_id,)).fetchone()
		if row is None:
			return None
		return self._row_to_stream(row)

	def get_all_streams(
		self,
		status: str | None = None,
		category: str | None = None,
		priority: str | None = None,
	) -> list[Stream]:
		"""All non-sentinel streams, most recently updated first.

		Each stream carries its latest commit as recent_activity.
		"""
		query = """SELECT s.*,
				c.message AS last_commit_message,
				c.files_changed AS last_commit_files,
				c.timestamp AS last_commit_time
			FROM streams s
			LEFT JOIN (
				SELECT stream_id, message, files_changed, timestamp,
					ROW_NUMBER() OVER (PARTITION BY stream_id ORDER BY timestamp DESC) AS rn
				FROM commits
			) c ON s.id = c.stream_id AND c.rn = 1
			WHERE s.id != ?"""
		params: list[Any] = [MAIN_STREAM_ID]
		conditions: list[str] = []
		if status:
			conditions.append("s.status = ?")
			params.append(status)
		if category:
			conditions.append("s.category = ?")
			params.append(category)
		if priority:
			conditions.append("s.priority = ?")
			params.append(priority)
		if conditions:
			query += " AND " + " AND ".join(conditions)
		query += " ORDER BY s.updated_at DESC"
		rows = self.conn.execute(query, params).fetchall()  # noqa: S608
		streams = []
		for row in rows:
			stream = self._row_to_stream(row)
			if row["last_commit_message"]:
				stream.recent_activity = RecentActivity(
					last_commit=row["last_commit_message"],
					files_changed=row["last_commit_files"] or 0,
					last_commit_time=format_relative_time(row["last_commit_time"]),
				)
			streams.append(stream)
		return streams

	def get_streams_by_status(self, status: str) -> list[Stream]:
		rows = self.conn.execute(
			"SELECT * FROM streams WHERE status=? ORDER BY updated_at DESC", (status,)
		).fetchall()
		return [self._row_to_stream(r) for r in rows]

	def update_stream(
		self,
		stream_id: str,
		*,
		status: str | None = None,
		progress: int | None = None,
		current_phase: int | None = None,
		blocked_by: str | None = None,
		commit: bool = True,
	) -> None:
		"""Update the given fields and stamp updated_at. No-op when nothing is given.

		An empty blocked_by clears the reference.
		"""
		fields: list[str] = []
		values: list[Any] = []
		if status is not None:
			fields.append("status=?")
			values.append(status)
		if progress is not None:
			fields.append("progress=?")
			values.append(progress)
		if current_phase is not None:
			fields.append("current_phase=?")
			values.append(current_phase)
		if blocked_by is not None:
			fields.append("blocked_by=?")
			values.append(blocked_by or None)
		if not fields:
			return
		fields.append("updated_at=?")
		values.append(_now_iso())
		values.append(stream_id)
		self.conn.execute(
			f"UPDATE streams SET {', '.join(fields)} WHERE id=?",  # noqa: S608
			values,
		)
		if commit:
			self.conn.commit()

	def complete_stream(self, stream_id: str, *, commit: bool = True) -> None:
		now = _now_iso()
		self.conn.execute(
			"UPDATE streams SET status='completed', completed_at=?, updated_at=? WHERE id=?",
			(now, now, stream_id),
		)
		if commit:
			self.conn.commit()

	def update_last_file_change(self, stream_id: str, timestamp: str) -> None:
		self.conn.execute(
			"UPDATE streams SET last_file_change=? WHERE id=?", (timestamp, stream_id),
		)
		self.conn.commit()

	def delete_stream(self, stream_id: str) -> bool:
		"""Delete a stream; its commits and history go with it."""
		with self.transaction() as conn:
			conn.execute("DELETE FROM commits WHERE stream_id=?", (stream_id,))
			conn.execute("DELETE FROM stream_history WHERE stream_id=?", (stream_id,))
			cursor = conn.execute("DELETE FROM streams WHERE id=?", (stream_id,))
		return cursor.rowcount > 0

	@staticmethod
	def _row_to_stream(row: sqlite3.Row) -> Stream:
		keys = row.keys()
		return Stream(
			id=row["id"],
			stream_number=row["stream_number"],
			title=row["title"],
			category=row["category"],
			priority=row["priority"],
			status=row["status"],
			progress=row["progress"],
			current_phase=row["current_phase"],
			worktree_path=row["worktree_path"],
			branch=row["branch"],
			blocked_by=row["blocked_by"],
			created_at=row["created_at"],
			updated_at=row["updated_at"],
			completed_at=row["completed_at"],
			phases=json.loads(row["phases"]) if row["phases"] else None,
			last_file_change=row["last_file_change"] if "last_file_change" in keys else None,
		)

	# -- Commits --

	def insert_commit(self, commit: Commit) -> int:
		"""Insert a commit and return its row id.

		Raises sqlite3.IntegrityError if the (stream, hash) pair already exists.
		"""
		cursor = self.conn.execute(
			"""INSERT INTO commits
			(stream_id, commit_hash, message, author, files_changed, timestamp)
			VALUES (?, ?, ?, ?, ?, ?)""",
			(
				commit.stream_id, commit.commit_hash, commit.message,
				commit.author, commit.files_changed, commit.timestamp,
			),
		)
		self.conn.commit()
		commit.id = cursor.lastrowid
		return int(cursor.lastrowid or 0)

	def insert_commit_if_new(self, commit: Commit) -> int | None:
		"""Insert a commit, returning None when it was already recorded."""
		try:
			return self.insert_commit(commit)
		except sqlite3.IntegrityError as exc:
			if "UNIQUE" not in str(exc):
				raise
			return None

	def get_stream_commits(self, stream_id: str, limit: int = 20) -> list[Commit]:
		rows = self.conn.execute(
			"SELECT * FROM commits WHERE stream_id=? ORDER BY timestamp DESC LIMIT ?",
			(stream_id, limit),
		).fetchall()
		return [self._row_to_commit(r) for r in rows]

	def get_recent_commits(self, limit: int = 50, offset: int = 0) -> list[Commit]:
		rows = self.conn.execute(
			"""SELECT c.*, s.stream_number AS stream_number, s.title AS stream_title
			FROM commits c
			JOIN streams s ON c.stream_id = s.id
			ORDER BY c.timestamp DESC
			LIMIT ? OFFSET ?""",
			(limit, offset),
		).fetchall()
		return [self._row_to_commit(r) for r in rows]

	def count_commits(self, stream_id: str | None = None) -> int:
		if stream_id is None:
			row = self.conn.execute("SELECT COUNT(*) AS cnt FROM commits").fetchone()
		else:
			row = self.conn.execute(
				"SELECT COUNT(*) AS cnt FROM commits WHERE stream_id=?", (stream_id,)
			).fetchone()
		return int(row["cnt"])

	@staticmethod
	def _row_to_commit(row: sqlite3.Row) -> Commit:
		keys = row.keys()
		return Commit(
			id=row["id"],
			stream_id=row["stream_id"],
			commit_hash=row["commit_hash"],
			message=row["message"],
			author=row["author"],
			files_changed=row["files_changed"],
			timestamp=row["timestamp"],
			stream_number=row["stream_number"] if "stream_number" in keys else "",
			stream_title=row["stream_title"] if "stream_title" in keys else "",
		)

	# -- History --

	def add_history_event(self, event: HistoryEvent, *, commit: bool = True) -> int:
		cursor = self.conn.execute(
			"""INSERT INTO stream_history
			(stream_id, event_type, old_value, new_value, timestamp)
			VALUES (?, ?, ?, ?, ?)""",
			(event.stream_id, event.event_type, event.old_value, event.new_value, event.timestamp),
		)
		if commit:
			self.conn.commit()
		event.id = cursor.lastrowid
		return int(cursor.lastrowid or 0)

	def get_stream_history(self, stream_id: str, limit: int = 50) -> list[HistoryEvent]:
		rows = self.conn.execute(
			"SELECT * FROM stream_history WHERE stream_id=? ORDER BY timestamp DESC, id DESC LIMIT ?",
			(stream_id, limit),
		).fetchall()
		return [
			HistoryEvent(
				id=r["id"],
				stream_id=r["stream_id"],
				event_type=r["event_type"],
				old_value=r["old_value"],
				new_value=r["new_value"],
				timestamp=r["timestamp"],
			)
			for r in rows
		]

	# -- Stats --

	def get_quick_stats(self) -> QuickStats:
		today = _start_of_today_iso()

		def _count(sql: str, params: tuple[Any, ...] = ()) -> int:
			return int(self.conn.execute(sql, params).fetchone()["cnt"])

		status_sql = "SELECT COUNT(*) AS cnt FROM streams WHERE status=?"
		return QuickStats(
			active_streams=_count(
				"SELECT COUNT(*) AS cnt FROM streams WHERE status NOT IN ('completed', 'archived')"
			),
			in_progress=_count(status_sql, ("active",)),
			blocked=_count(status_sql, ("blocked",)),
			ready_to_start=_count(status_sql, ("paused",)),
			completed_today=_count("SELECT COUNT(*) AS cnt FROM streams WHERE completed_at >= ?", (today,)),
			total_commits=_count("SELECT COUNT(*) AS cnt FROM commits"),
			commits_today=_count("SELECT COUNT(*) AS cnt FROM commits WHERE timestamp >= ?", (today,)),
		)

	# -- Summary Jobs --

	def queue_summary_job(self, stream: Stream, user_summary: str, history_file_path: str) -> int:
		"""Snapshot a retiring stream into a pending summary job. Returns the job id."""
		cursor = self.conn.execute(
			"""INSERT INTO summary_jobs
			(stream_id, stream_number, stream_title, stream_category, stream_branch,
			 stream_worktree_path, stream_created_at, stream_completed_at,
			 user_summary, history_file_path, created_at)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
			(
				stream.id, stream.stream_number, stream.title, stream.category,
				stream.branch, stream.worktree_path, stream.created_at,
				stream.completed_at, user_summary, history_file_path, _now_iso(),
			),
		)
		self.conn.commit()
		return int(cursor.lastrowid or 0)

	def get_pending_job_count(self) -> int:
		row = self.conn.execute(
			"SELECT COUNT(*) AS cnt FROM summary_jobs WHERE status='pending'"
		).fetchone()
		return int(row["cnt"])

	def get_pending_jobs(self, limit: int = 10) -> list[SummaryJob]:
		rows = self.conn.execute(
			"""SELECT * FROM summary_jobs
			WHERE status='pending' AND attempts < max_attempts
			ORDER BY created_at ASC, id ASC
			LIMIT ?""",
			(limit,),
		).fetchall()
		return [self._row_to_job(r) for r in rows]

	def get_job(self, job_id: int) -> SummaryJob | None:
		row = self.conn.execute("SELECT * FROM summary_jobs WHERE id=?", (job_id,)).fetchone()
		if row is None:
			return None
		return self._row_to_job(row)

	def mark_job_processing(self, job_id: int) -> None:
		self.conn.execute(
			"""UPDATE summary_jobs
			SET status='processing', attempts=attempts + 1, started_at=?
			WHERE id=?""",
			(_now_iso(), job_id),
		)
		self.conn.commit()

	def mark_job_completed(self, job_id: int) -> None:
		self.conn.execute(
			"UPDATE summary_jobs SET status='completed', completed_at=?, error_message=NULL WHERE id=?",
			(_now_iso(), job_id),
		)
		self.conn.commit()

	def mark_job_failed(self, job_id: int, error_message: str) -> None:
		"""Record a failed attempt; the job goes back to pending until attempts run out."""
		self.conn.execute(
			"""UPDATE summary_jobs
			SET status=CASE WHEN attempts >= max_attempts THEN 'failed' ELSE 'pending' END,
				error_message=?
			WHERE id=?""",
			(error_message, job_id),
		)
		self.conn.commit()

	def delete_job(self, job_id: int) -> bool:
		cursor = self.conn.execute("DELETE FROM summary_jobs WHERE id=?", (job_id,))
		self.conn.commit()
		return cursor.rowcount > 0

	@staticmethod
	def _row_to_job(row: sqlite3.Row) -> SummaryJob:
		return SummaryJob(
			id=row["id"],
			stream_id=row["stream_id"],
			stream_number=row["stream_number"],
			stream_title=row["stream_title"],
			stream_category=row["stream_category"],
			stream_branch=row["stream_branch"],
			stream_worktree_path=row["stream_worktree_path"],
			stream_created_at=row["stream_created_at"],
			stream_completed_at=row["stream_completed_at"],
			user_summary=row["user_summary"],
			history_file_path=row["history_file_path"],
			status=row["status"],
			attempts=row["attempts"],
			max_attempts=row["max_attempts"],
			error_message=row["error_message"],
			created_at=row["created_at"],
			started_at=row["started_at"],
			completed_at=row["completed_at"],
		)
