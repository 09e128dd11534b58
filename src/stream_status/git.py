"""Async git helpers: worktree inspection, merged branches, and bounded log queries."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from stream_status.models import MAIN_STREAM_ID, WorktreeInfo

logger = logging.getLogger(__name__)

MAIN_BRANCH_NAMES = frozenset({"main", "master"})

# %H|%an|%aI|%s| -- trailing pipe marks header lines apart from numstat lines
LOG_FORMAT = "%H|%an|%aI|%s|"


def parse_worktree_porcelain(output: str) -> dict[str, WorktreeInfo]:
	"""Parse `git worktree list --porcelain` output into a key -> WorktreeInfo map.

	The main worktree is keyed "main"; others by their directory basename.
	Entries without both a path and a branch (detached HEAD, bare) are skipped.
	"""
	worktrees: dict[str, WorktreeInfo] = {}
	for block in output.strip().split("\n\n"):
		path = ""
		branch = ""
		commit = ""
		for line in block.splitlines():
			if line.startswith("worktree "):
				path = line[len("worktree "):].strip()
			elif line.startswith("HEAD "):
				commit = line[len("HEAD "):].strip()
			elif line.startswith("branch "):
				branch = line[len("branch "):].strip().removeprefix("refs/heads/")
		if not path or not branch:
			continue
		is_main = branch in MAIN_BRANCH_NAMES
		key = MAIN_STREAM_ID if is_main else Path(path).name
		worktrees[key] = WorktreeInfo(path=path, branch=branch, commit=commit, is_main=is_main)
	return worktrees


def parse_merged_branches(output: str) -> set[str]:
	"""Parse `git branch --merged` output, dropping trunk names and checkout markers."""
	merged: set[str] = set()
	for line in output.splitlines():
		name = line.strip().lstrip("*+").strip()
		if name and name not in MAIN_BRANCH_NAMES:
			merged.add(name)
	return merged


class GitClient:
	"""Runs the git binary for one repository.

	Query methods never raise: failures are logged and reported as empty
	results, which callers must read as "unknown" rather than "none".
	"""

	def __init__(self, repo_root: str | Path, timeout: float = 30.0, main_branch: str = "main") -> None:
		self.repo_root = str(repo_root)
		self.timeout = timeout
		self.main_branch = main_branch

	async def run(
		self, *args: str, cwd: str | Path | None = None, merge_stderr: bool = True,
	) -> tuple[bool, str]:
		"""Run a git command. Returns (ok, output).

		With merge_stderr=False, stderr is kept out of the output on success and
		returned in its place on failure, so parsers only ever see stdout.
		"""
		try:
			proc = await asyncio.create_subprocess_exec(
				"git", *args,
				cwd=str(cwd) if cwd else self.repo_root,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE,
			)
		except OSError as exc:
			logger.warning("Could not start git %s: %s", args[0] if args else "", exc)
			return (False, str(exc))
		try:
			stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
		except asyncio.TimeoutError:
			proc.kill()
			await proc.wait()
			logger.warning("git %s timed out after %ss", " ".join(args), self.timeout)
			return (False, f"git {args[0] if args else ''} timed out after {self.timeout}s")
		ok = proc.returncode == 0
		raw = stdout if ok or not stderr else stderr
		return (ok, raw.decode(errors="replace") if raw else "")

	async def list_worktrees(self) -> dict[str, WorktreeInfo]:
		ok, output = await self.run("worktree", "list", "--porcelain", merge_stderr=False)
		if not ok:
			logger.error("Failed to list worktrees in %s: %s", self.repo_root, output.strip())
			return {}
		return parse_worktree_porcelain(output)

	async def list_merged_branches(self, target: str | None = None) -> set[str]:
		ok, output = await self.run("branch", "--merged", target or self.main_branch, merge_stderr=False)
		if not ok:
			logger.error("Failed to list merged branches in %s: %s", self.repo_root, output.strip())
			return set()
		return parse_merged_branches(output)

	async def log_commits(
		self,
		rev_range: str,
		*,
		cwd: str | Path | None = None,
		since: str | None = None,
		max_count: int = 50,
	) -> str | None:
		"""Raw `git log --numstat` text for rev_range, or None on failure."""
		args = ["log", rev_range, f"--pretty=format:{LOG_FORMAT}", "--numstat"]
		if since:
			args.append(f"--since={since}")
		args.extend(["-n", str(max_count)])
		ok, output = await self.run(*args, cwd=cwd, merge_stderr=False)
		if not ok:
			logger.debug("git log %s failed in %s: %s", rev_range, cwd or self.repo_root, output.strip())
			return None
		return output
