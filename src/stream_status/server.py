"""Stream status API -- REST endpoints plus SSE/WebSocket push."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from stream_status.config import StreamStatusConfig
from stream_status.db import Database
from stream_status.events import EventBroadcaster, EventKind
from stream_status.git import GitClient
from stream_status.models import (
	STREAM_STATUSES,
	BulkRetirementItem,
	Commit,
	HistoryEvent,
	QuickStats,
	ReconciliationEntry,
	ReconciliationResult,
	RetirementResult,
	Stream,
	_now_iso,
)
from stream_status.reconciliation import reconcile_worktrees
from stream_status.retirement import ERR_IN_PROGRESS, RetirementOptions, retire_and_remove, retire_many
from stream_status.scanner import scan_all
from stream_status.sync import sync_from_files

logger = logging.getLogger(__name__)


class _CamelModel(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StreamUpdateRequest(_CamelModel):
	"""PATCH body for a stream."""

	status: str | None = None
	progress: int | None = None
	current_phase: int | None = None
	blocked_by: str | None = None


class RetireRequest(_CamelModel):
	summary: str = "Stream completed and retired"
	delete_worktree: bool = True
	cleanup_plan_files: bool = True


class BulkRetireRequest(_CamelModel):
	stream_ids: list[str] = Field(default_factory=list)
	summary: str = "Bulk retirement"
	delete_worktree: bool = True
	cleanup_plan_files: bool = True


class CommitCreateRequest(_CamelModel):
	stream_id: str = ""
	commit_hash: str = ""
	message: str = ""
	author: str = ""
	files_changed: int | None = None
	timestamp: str | None = None


class ReconcileRequest(_CamelModel):
	dry_run: bool = True
	auto_archive_stale: bool = False


def _format_sse(event: str, data: dict[str, Any]) -> str:
	return f"event: {event}\ndata: {json.dumps(data)}\n\n"


async def sse_stream(
	broadcaster: EventBroadcaster,
	heartbeat_seconds: float = 30.0,
	is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
	"""Yield SSE frames: a connected event, broadcasts, and periodic heartbeats."""
	queue = broadcaster.subscribe()
	try:
		yield _format_sse("connected", {"type": "connected", "timestamp": _now_iso()})
		while True:
			if is_disconnected is not None and await is_disconnected():
				break
			try:
				message = await asyncio.wait_for(queue.get(), timeout=heartbeat_seconds)
			except asyncio.TimeoutError:
				yield _format_sse("heartbeat", {
					"timestamp": _now_iso(),
					"clients": broadcaster.listener_count,
				})
				continue
			yield _format_sse(message["type"], message)
	finally:
		broadcaster.unsubscribe(queue)


class StreamStatusServer:
	"""HTTP surface over the stream database, git inspector and services.

	Runs a background task that rescans commits every scan interval and
	pushes "commits"/"stats" notifications when anything new was found.
	"""

	def __init__(
		self,
		config: StreamStatusConfig,
		db: Database | None = None,
		git: GitClient | None = None,
		broadcaster: EventBroadcaster | None = None,
	) -> None:
		self.config = config
		self._owns_db = db is None
		self.db = db or Database(config.database_path, check_same_thread=False)
		self.git = git or GitClient(
			config.project.resolved_root,
			timeout=config.git.timeout_seconds,
			main_branch=config.git.main_branch,
		)
		self.events = broadcaster or EventBroadcaster()
		self.auth_token = config.server.auth_token
		self._scan_task: asyncio.Task[None] | None = None
		# Stream ids with a retirement running; shared by single and bulk archive
		self._retiring: set[str] = set()

		@asynccontextmanager
		async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
			if self.config.server.sync_on_start:
				await self.sync_on_start()
			self.start_periodic_scan()
			yield
			await self.stop_periodic_scan()
			self.events.close()
			if self._owns_db:
				self.db.close()

		self.app = FastAPI(title="Stream Status", lifespan=_lifespan)
		self.app.add_middleware(
			CORSMiddleware,
			allow_origins=config.server.cors_origins,
			allow_methods=["GET", "POST", "PATCH"],
			allow_headers=["Authorization", "Content-Type"],
		)
		self._setup_routes()
		dashboard = config.server.dashboard_path
		if dashboard and Path(dashboard).is_dir():
			self.app.mount("/", StaticFiles(directory=dashboard, html=True), name="dashboard")

	def retirement_options(self, delete_worktree: bool = True, cleanup_plan_files: bool = True) -> RetirementOptions:
		return RetirementOptions(
			project_root=str(self.config.project.resolved_root),
			worktree_root=str(self.config.project.resolved_worktree_root),
			delete_worktree=delete_worktree,
			cleanup_plan_files=cleanup_plan_files,
			main_branch=self.config.git.main_branch,
			remote=self.config.git.remote,
		)

	def notify(self, *kinds: EventKind) -> None:
		for kind in kinds:
			self.events.publish(kind)

	async def sync_on_start(self) -> None:
		try:
			result = await sync_from_files(
				self.db, self.git,
				self.config.project.resolved_root,
				self.config.project.resolved_worktree_root,
			)
			logger.info(
				"Startup sync: %d synced, %d skipped, %d errors, %d worktrees",
				result.synced, result.skipped, len(result.errors), result.worktrees_discovered,
			)
		except Exception as exc:
			logger.error("Startup sync failed: %s", exc)

	async def scan_once(self) -> int:
		"""Run one commit scan, notifying listeners when commits were added."""
		result = await scan_all(self.db, self.git)
		if result.commits_added > 0:
			logger.info("Found %d new commits", result.commits_added)
			self.notify("commits", "stats")
		return result.commits_added

	async def _scan_loop(self) -> None:
		interval = self.config.server.scan_interval_seconds
		logger.info("Starting periodic git scan (every %ds)", interval)
		while True:
			await asyncio.sleep(interval)
			try:
				await self.scan_once()
			except Exception as exc:
				logger.error("Periodic scan failed: %s", exc)

	def start_periodic_scan(self) -> None:
		if self._scan_task is not None and not self._scan_task.done():
			self._scan_task.cancel()
		self._scan_task = asyncio.create_task(self._scan_loop())

	async def stop_periodic_scan(self) -> None:
		if self._scan_task is None:
			return
		self._scan_task.cancel()
		try:
			await self._scan_task
		except asyncio.CancelledError:
			pass
		self._scan_task = None
		logger.info("Periodic scanning stopped")

	def _setup_routes(self) -> None:
		_security = HTTPBearer(auto_error=False)

		async def verify_token(
			credentials: HTTPAuthorizationCredentials | None = Depends(_security),
		) -> None:
			if not self.auth_token:
				return
			if credentials is None:
				raise HTTPException(status_code=401, detail="Missing authorization header")
			if credentials.credentials != self.auth_token:
				raise HTTPException(status_code=401, detail="Invalid token")

		guarded = [Depends(verify_token)]

		@self.app.get("/api/health")
		async def health() -> dict[str, Any]:
			return {
				"status": "ok",
				"timestamp": _now_iso(),
				"projectName": self.config.project.resolved_name,
			}

		# -- Streams --

		@self.app.get("/api/streams", dependencies=guarded)
		async def list_streams(
			status: str | None = None,
			category: str | None = None,
			priority: str | None = None,
		) -> dict[str, Any]:
			streams = self.db.get_all_streams(status=status, category=category, priority=priority)
			return {"streams": [_serialize_stream(s) for s in streams], "total": len(streams)}

		@self.app.post("/api/streams/archive-bulk", dependencies=guarded)
		async def archive_bulk(body: BulkRetireRequest) -> dict[str, Any]:
			if not body.stream_ids:
				raise HTTPException(status_code=400, detail="streamIds must be a non-empty array")
			items = await retire_many(
				self.db, self.git, body.stream_ids, body.summary,
				self.retirement_options(body.delete_worktree, body.cleanup_plan_files),
				in_progress=self._retiring,
			)
			self.notify("streams", "stats")
			succeeded = sum(1 for i in items if i.outcome == "succeeded")
			skipped = sum(1 for i in items if i.outcome == "skipped")
			failed = sum(1 for i in items if i.outcome == "failed")
			return {
				"success": failed == 0,
				"message": f"Retired {succeeded} streams, {skipped} skipped, {failed} failed",
				"summary": {"succeeded": succeeded, "skipped": skipped, "failed": failed},
				"results": [_serialize_bulk_item(i) for i in items],
			}

		@self.app.get("/api/streams/{stream_id}", dependencies=guarded)
		async def get_stream(stream_id: str) -> dict[str, Any]:
			stream = self.db.get_stream(stream_id)
			if stream is None:
				raise HTTPException(status_code=404, detail="Stream not found")
			return {
				**_serialize_stream(stream),
				"commits": [_serialize_commit(c) for c in self.db.get_stream_commits(stream_id)],
				"history": [_serialize_history(h) for h in self.db.get_stream_history(stream_id)],
			}

		@self.app.patch("/api/streams/{stream_id}", dependencies=guarded)
		async def update_stream(stream_id: str, body: StreamUpdateRequest) -> dict[str, Any]:
			stream = self.db.get_stream(stream_id)
			if stream is None:
				raise HTTPException(status_code=404, detail="Stream not found")
			if body.status is not None and body.status not in STREAM_STATUSES:
				raise HTTPException(
					status_code=400,
					detail=f"Invalid status. Must be one of: {', '.join(STREAM_STATUSES)}",
				)
			if body.progress is not None and not 0 <= body.progress <= 100:
				raise HTTPException(status_code=400, detail="Progress must be a number between 0 and 100")
			if body.blocked_by and self.db.get_stream(body.blocked_by) is None:
				raise HTTPException(status_code=400, detail=f"Blocking stream not found: {body.blocked_by}")

			previous = stream.status
			with self.db.transaction():
				if body.status == "completed" and previous != "completed":
					self.db.complete_stream(stream_id, commit=False)
					self.db.update_stream(
						stream_id, progress=body.progress,
						current_phase=body.current_phase, blocked_by=body.blocked_by, commit=False,
					)
				else:
					self.db.update_stream(
						stream_id, status=body.status, progress=body.progress,
						current_phase=body.current_phase, blocked_by=body.blocked_by, commit=False,
					)
				if body.status and body.status != previous:
					self.db.add_history_event(HistoryEvent(
						stream_id=stream_id, event_type="status_changed",
						old_value=previous, new_value=body.status,
					), commit=False)
				if body.progress is not None and body.progress != stream.progress:
					self.db.add_history_event(HistoryEvent(
						stream_id=stream_id, event_type="progress_updated",
						old_value=str(stream.progress), new_value=str(body.progress),
					), commit=False)
			self.notify("streams", "stats")

			updated = self.db.get_stream(stream_id)
			changes: dict[str, Any] = {}
			if body.status and body.status != previous:
				changes["status"] = {"from": previous, "to": body.status}
			if body.progress is not None:
				changes["progress"] = body.progress
			return {
				"success": True,
				"stream": _serialize_stream(updated) if updated else None,
				"changes": changes,
			}

		@self.app.post("/api/streams/{stream_id}/archive", dependencies=guarded)
		async def archive_stream(stream_id: str, body: RetireRequest | None = None) -> dict[str, Any]:
			body = body or RetireRequest()
			stream = self.db.get_stream(stream_id)
			if stream is None:
				raise HTTPException(status_code=404, detail="Stream not found")
			if stream.status != "completed":
				raise HTTPException(
					status_code=400,
					detail=(
						"Stream must be in 'completed' status before retirement. "
						f"Current status: {stream.status}"
					),
				)
			if stream_id in self._retiring:
				raise HTTPException(status_code=409, detail=ERR_IN_PROGRESS)
			self._retiring.add(stream_id)
			try:
				result = await retire_and_remove(
					self.db, self.git, stream, body.summary,
					self.retirement_options(body.delete_worktree, body.cleanup_plan_files),
				)
			finally:
				self._retiring.discard(stream_id)
			self.notify("streams", "stats")
			suffix = "retired" if result.success else "retired with warnings"
			return {
				"success": result.success,
				"message": f"Stream {stream_id} {suffix} and removed from database",
				"streamId": stream_id,
				"deleted": True,
				"retirement": _serialize_retirement(result),
			}

		# -- Commits --

		@self.app.get("/api/commits", dependencies=guarded)
		async def list_commits(
			limit: int = Query(default=50, ge=1, le=500),
			offset: int = Query(default=0, ge=0),
			stream_id: str | None = Query(default=None, alias="streamId"),
		) -> dict[str, Any]:
			if stream_id:
				commits = self.db.get_stream_commits(stream_id, limit)
			else:
				commits = self.db.get_recent_commits(limit, offset)
			return {
				"commits": [_serialize_commit(c) for c in commits],
				"total": len(commits),
				"limit": limit,
				"offset": offset,
			}

		@self.app.post("/api/commits", dependencies=guarded, status_code=201)
		async def add_commit(body: CommitCreateRequest) -> dict[str, Any]:
			if not (body.stream_id and body.commit_hash and body.message and body.author) or body.files_changed is None:
				raise HTTPException(
					status_code=400,
					detail="streamId, commitHash, message, author, and filesChanged are required",
				)
			if self.db.get_stream(body.stream_id) is None:
				raise HTTPException(status_code=404, detail=f"Stream {body.stream_id} does not exist in database")
			commit = Commit(
				stream_id=body.stream_id,
				commit_hash=body.commit_hash,
				message=body.message,
				author=body.author,
				files_changed=body.files_changed,
				timestamp=body.timestamp or _now_iso(),
			)
			try:
				commit_id = self.db.insert_commit(commit)
			except sqlite3.IntegrityError:
				raise HTTPException(status_code=409, detail="Commit already recorded for this stream") from None
			self.notify("commits", "stats")
			return {"success": True, "id": commit_id, "message": "Commit added successfully"}

		# -- Stats --

		@self.app.get("/api/stats", dependencies=guarded)
		async def stats() -> dict[str, Any]:
			return _serialize_stats(self.db.get_quick_stats())

		# -- Reconciliation --

		@self.app.get("/api/reconciliation/status", dependencies=guarded)
		async def reconciliation_status() -> dict[str, Any]:
			result = await reconcile_worktrees(self.db, self.git, dry_run=True)
			return {"timestamp": _now_iso(), "dryRun": True, **_serialize_reconciliation(result)}

		@self.app.post("/api/reconciliation/run", dependencies=guarded)
		async def reconciliation_run(body: ReconcileRequest | None = None) -> dict[str, Any]:
			body = body or ReconcileRequest()
			result = await reconcile_worktrees(
				self.db, self.git,
				dry_run=body.dry_run,
				auto_archive_stale=body.auto_archive_stale,
			)
			if not body.dry_run:
				self.notify("streams", "stats")
			return {
				"timestamp": _now_iso(),
				"dryRun": body.dry_run,
				"autoArchiveStale": body.auto_archive_stale,
				**_serialize_reconciliation(result),
			}

		@self.app.get("/api/reconciliation/worktrees", dependencies=guarded)
		async def reconciliation_worktrees() -> dict[str, Any]:
			worktrees = await self.git.list_worktrees()
			items = [
				{"id": key, "path": w.path, "branch": w.branch, "commit": w.commit, "isMain": w.is_main}
				for key, w in worktrees.items()
			]
			return {"timestamp": _now_iso(), "total": len(items), "worktrees": items}

		@self.app.get("/api/reconciliation/merged", dependencies=guarded)
		async def reconciliation_merged() -> dict[str, Any]:
			branches = sorted(await self.git.list_merged_branches())
			return {"timestamp": _now_iso(), "total": len(branches), "branches": branches}

		# -- Push --

		@self.app.get("/api/events")
		async def events(request: Request, token: str = Query(default="")) -> StreamingResponse:
			if self.auth_token and token != self.auth_token:
				raise HTTPException(status_code=401, detail="Invalid token")
			return StreamingResponse(
				sse_stream(self.events, self.config.server.heartbeat_seconds, request.is_disconnected),
				media_type="text/event-stream",
				headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
			)

		@self.app.websocket("/ws")
		async def ws_endpoint(websocket: WebSocket, token: str = Query(default="")) -> None:
			if self.auth_token and token != self.auth_token:
				await websocket.close(code=4401, reason="Invalid token")
				return
			await websocket.accept()
			queue = self.events.subscribe()
			receiver = asyncio.create_task(websocket.receive_text())
			try:
				await websocket.send_json({"type": "connected", "timestamp": _now_iso()})
				while True:
					getter = asyncio.create_task(queue.get())
					done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
					if receiver in done:
						getter.cancel()
						receiver.result()
						receiver = asyncio.create_task(websocket.receive_text())
						continue
					await websocket.send_json(getter.result())
			except WebSocketDisconnect:
				pass
			finally:
				receiver.cancel()
				self.events.unsubscribe(queue)


def _serialize_stream(s: Stream) -> dict[str, Any]:
	data: dict[str, Any] = {
		"id": s.id,
		"streamNumber": s.stream_number,
		"title": s.title,
		"category": s.category,
		"priority": s.priority,
		"status": s.status,
		"progress": s.progress,
		"currentPhase": s.current_phase,
		"worktreePath": s.worktree_path,
		"branch": s.branch,
		"blockedBy": s.blocked_by,
		"createdAt": s.created_at,
		"updatedAt": s.updated_at,
		"completedAt": s.completed_at,
		"phases": s.phases,
		"lastFileChange": s.last_file_change,
	}
	if s.recent_activity is not None:
		data["recentActivity"] = {
			"lastCommit": s.recent_activity.last_commit,
			"filesChanged": s.recent_activity.files_changed,
			"lastCommitTime": s.recent_activity.last_commit_time,
		}
	return data


def _serialize_commit(c: Commit) -> dict[str, Any]:
	data: dict[str, Any] = {
		"id": c.id,
		"streamId": c.stream_id,
		"commitHash": c.commit_hash,
		"message": c.message,
		"author": c.author,
		"filesChanged": c.files_changed,
		"timestamp": c.timestamp,
	}
	if c.stream_number or c.stream_title:
		data["streamNumber"] = c.stream_number
		data["streamTitle"] = c.stream_title
	return data


def _serialize_history(h: HistoryEvent) -> dict[str, Any]:
	return {
		"id": h.id,
		"streamId": h.stream_id,
		"eventType": h.event_type,
		"oldValue": h.old_value,
		"newValue": h.new_value,
		"timestamp": h.timestamp,
	}


def _serialize_stats(q: QuickStats) -> dict[str, int]:
	return {
		"activeStreams": q.active_streams,
		"inProgress": q.in_progress,
		"blocked": q.blocked,
		"readyToStart": q.ready_to_start,
		"completedToday": q.completed_today,
		"totalCommits": q.total_commits,
		"commitsToday": q.commits_today,
	}


def _serialize_entry(e: ReconciliationEntry) -> dict[str, Any]:
	return {
		"streamId": e.stream_id,
		"title": e.title,
		"branch": e.branch,
		"worktreePath": e.worktree_path,
		"previousStatus": e.previous_status,
		"newStatus": e.new_status,
		"reason": e.reason,
	}


def _serialize_reconciliation(r: ReconciliationResult) -> dict[str, Any]:
	return {
		"active": [_serialize_entry(e) for e in r.active],
		"completed": [_serialize_entry(e) for e in r.completed],
		"stale": [_serialize_entry(e) for e in r.stale],
		"orphaned": [_serialize_entry(e) for e in r.orphaned],
		"errors": [{"streamId": e["stream_id"], "error": e["error"]} for e in r.errors],
		"summary": {
			"totalInDb": r.summary.total_in_db,
			"totalWorktrees": r.summary.total_worktrees,
			"active": r.summary.active,
			"completed": r.summary.completed,
			"stale": r.summary.stale,
			"orphaned": r.summary.orphaned,
		},
	}


def _serialize_retirement(r: RetirementResult) -> dict[str, Any]:
	return {
		"success": r.success,
		"worktreeDeleted": r.worktree_deleted,
		"archiveWritten": r.archive_written,
		"planFilesCleanedUp": r.plan_files_cleaned_up,
		"summaryJobQueued": r.summary_job_queued,
		"errors": list(r.errors),
	}


def _serialize_bulk_item(i: BulkRetirementItem) -> dict[str, Any]:
	return {
		"streamId": i.stream_id,
		"outcome": i.outcome,
		"deleted": i.deleted,
		"error": i.error,
		"retirement": _serialize_retirement(i.retirement) if i.retirement else None,
	}
