"""CLI interface for stream-status."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from stream_status.config import StreamStatusConfig, load_config, validate_config
from stream_status.db import Database
from stream_status.git import GitClient
from stream_status.reconciliation import format_reconciliation_result, reconcile_worktrees
from stream_status.retirement import RetirementOptions, retire_many
from stream_status.scanner import scan_all
from stream_status.sync import sync_from_files

DEFAULT_CONFIG = "stream-status.toml"


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="streams",
		description="Stream Status - track parallel development streams across git worktrees",
	)
	sub = parser.add_subparsers(dest="command")

	# streams serve
	serve = sub.add_parser("serve", help="Run the API server")
	serve.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	serve.add_argument("--host", default=None)
	serve.add_argument("--port", type=int, default=None)
	serve.add_argument("--no-sync", action="store_true", help="Skip markdown sync on start")

	# streams sync
	sync = sub.add_parser("sync", help="Import stream definitions from .project/plan/streams/")
	sync.add_argument("--config", default=DEFAULT_CONFIG)

	# streams scan
	scan = sub.add_parser("scan", help="Scan git history for new commits")
	scan.add_argument("--config", default=DEFAULT_CONFIG)

	# streams reconcile
	reconcile = sub.add_parser("reconcile", help="Compare stream records against git worktrees")
	reconcile.add_argument("--config", default=DEFAULT_CONFIG)
	reconcile.add_argument("--apply", action="store_true", help="Persist status changes (default: dry run)")
	reconcile.add_argument("--auto-archive-stale", action="store_true", help="Archive streams without a worktree")

	# streams retire
	retire = sub.add_parser("retire", help="Retire completed streams")
	retire.add_argument("stream_ids", nargs="+")
	retire.add_argument("--config", default=DEFAULT_CONFIG)
	retire.add_argument("--summary", default="Stream completed and retired")
	retire.add_argument("--keep-worktree", action="store_true")
	retire.add_argument("--keep-plan-files", action="store_true")

	# streams status
	status = sub.add_parser("status", help="Show stream overview")
	status.add_argument("--config", default=DEFAULT_CONFIG)

	# streams validate-config
	validate = sub.add_parser("validate-config", help="Validate configuration")
	validate.add_argument("--config", default=DEFAULT_CONFIG)

	return parser


def _load(args: argparse.Namespace) -> StreamStatusConfig:
	"""Load the config file if present; the environment alone is enough otherwise."""
	path = Path(args.config)
	if path.exists():
		return load_config(path)
	if args.config != DEFAULT_CONFIG:
		raise FileNotFoundError(f"Config file not found: {path}")
	return load_config(None)


def _git_for(config: StreamStatusConfig) -> GitClient:
	return GitClient(
		config.project.resolved_root,
		timeout=config.git.timeout_seconds,
		main_branch=config.git.main_branch,
	)


def _require_project(config: StreamStatusConfig) -> bool:
	if not config.project.root:
		print("No project root configured. Set PROJECT_ROOT or [project] root.")
		return False
	return True


def cmd_serve(args: argparse.Namespace) -> int:
	"""Run the API server."""
	import uvicorn

	from stream_status.server import StreamStatusServer

	config = _load(args)
	if not _require_project(config):
		return 1
	if args.host:
		config.server.host = args.host
	if args.port:
		config.server.port = args.port
	if args.no_sync:
		config.server.sync_on_start = False

	server = StreamStatusServer(config)
	print(f"Project:   {config.project.resolved_name}")
	print(f"Database:  {config.database_path}")
	print(f"API:       http://{config.server.host}:{config.server.port}/api/")
	uvicorn.run(server.app, host=config.server.host, port=config.server.port, log_level="warning")
	return 0


def cmd_sync(args: argparse.Namespace) -> int:
	"""Import stream definitions from planning markdown."""
	config = _load(args)
	if not _require_project(config):
		return 1
	with Database(config.database_path) as db:
		result = asyncio.run(sync_from_files(
			db, _git_for(config),
			config.project.resolved_root, config.project.resolved_worktree_root,
		))
	print(f"Synced {result.synced}, skipped {result.skipped}, errors {len(result.errors)}")
	print(f"Worktrees discovered: {result.worktrees_discovered}")
	for err in result.errors:
		print(f"  [x] {err}")
	return 1 if result.errors else 0


def cmd_scan(args: argparse.Namespace) -> int:
	"""Scan git history once."""
	config = _load(args)
	if not _require_project(config):
		return 1
	with Database(config.database_path) as db:
		result = asyncio.run(scan_all(db, _git_for(config)))
	print(f"Scanned {result.scanned} streams, {result.commits_added} new commits, {result.errors} errors")
	return 1 if result.errors else 0


def cmd_reconcile(args: argparse.Namespace) -> int:
	"""Reconcile stream records with git worktrees."""
	config = _load(args)
	if not _require_project(config):
		return 1
	dry_run = not args.apply
	with Database(config.database_path) as db:
		result = asyncio.run(reconcile_worktrees(
			db, _git_for(config),
			dry_run=dry_run,
			auto_archive_stale=args.auto_archive_stale,
		))
	print(format_reconciliation_result(result, dry_run))
	return 1 if result.errors else 0


def cmd_retire(args: argparse.Namespace) -> int:
	"""Retire completed streams."""
	config = _load(args)
	if not _require_project(config):
		return 1
	options = RetirementOptions(
		project_root=str(config.project.resolved_root),
		worktree_root=str(config.project.resolved_worktree_root),
		delete_worktree=not args.keep_worktree,
		cleanup_plan_files=not args.keep_plan_files,
		main_branch=config.git.main_branch,
		remote=config.git.remote,
	)
	with Database(config.database_path) as db:
		items = asyncio.run(retire_many(db, _git_for(config), args.stream_ids, args.summary, options))
	for item in items:
		icon = {"succeeded": "+", "skipped": "-", "failed": "x"}[item.outcome]
		line = f"[{icon}] {item.stream_id}: {item.outcome}"
		if item.error:
			line += f" ({item.error})"
		print(line)
	return 1 if any(i.outcome == "failed" for i in items) else 0


def cmd_status(args: argparse.Namespace) -> int:
	"""Show stream overview."""
	config = _load(args)
	db_path = config.database_path
	if not db_path.exists():
		print("No database found. Run 'streams sync' first.")
		return 1

	with Database(db_path) as db:
		stats = db.get_quick_stats()
		print(f"Active streams: {stats.active_streams} "
			f"(in progress {stats.in_progress}, blocked {stats.blocked}, paused {stats.ready_to_start})")
		print(f"Commits: {stats.total_commits} total, {stats.commits_today} today")
		print(f"Completed today: {stats.completed_today}")

		streams = db.get_all_streams()
		if streams:
			print(f"\nStreams ({len(streams)}):")
			for s in streams:
				activity = f" | {s.recent_activity.last_commit_time}" if s.recent_activity else ""
				print(f"  [{s.status}] {s.id}: {s.title} ({s.progress}%){activity}")
		return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Validate config file semantically."""
	config = _load(args)
	issues = validate_config(config)

	errors = [(lvl, msg) for lvl, msg in issues if lvl == "error"]
	warnings = [(lvl, msg) for lvl, msg in issues if lvl == "warning"]

	for level, msg in issues:
		print(f"[{level.upper()}] {msg}")

	if not issues:
		print("Config OK")

	print(f"\n{len(errors)} error(s), {len(warnings)} warning(s)")
	return 1 if errors else 0


COMMANDS = {
	"serve": cmd_serve,
	"sync": cmd_sync,
	"scan": cmd_scan,
	"reconcile": cmd_reconcile,
	"retire": cmd_retire,
	"status": cmd_status,
	"validate-config": cmd_validate_config,
}


def main(argv: list[str] | None = None) -> int:
	logging.basicConfig(
		level=logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		datefmt="%H:%M:%S",
		force=True,
	)
	parser = build_parser()
	args = parser.parse_args(argv)

	if args.command is None:
		parser.print_help()
		return 0

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	try:
		return handler(args)
	except FileNotFoundError as e:
		print(f"Error: {e}")
		return 1


if __name__ == "__main__":
	sys.exit(main())
