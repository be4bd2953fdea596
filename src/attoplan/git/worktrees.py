"""Isolated per-job working directories backed by ``git worktree``.

Every worktree add/remove against one repository is serialized through a
lock keyed by the repository's resolved path; distinct repositories never
wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from attoplan.git.executor import run_git, run_git_or_none, run_git_or_raise
from attoplan.git.repository import resolve_ref

logger = logging.getLogger(__name__)

_SUBMODULE_PATH_RE = re.compile(r"^submodule\.(.*?)\.path\s+(.*)$")


@dataclass(slots=True)
class WorktreeCreateResult:
    path: Path
    base_commit: str | None
    reused: bool = False
    duration_ms: int = 0
    submodules_linked: list[str] = field(default_factory=list)


@dataclass(slots=True)
class WorktreeInfo:
    path: Path
    head: str | None = None
    branch: str | None = None
    detached: bool = False


class WorktreeManager:
    """Creates, reuses and destroys git worktrees."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def repo_lock(self, repo: str | Path) -> asyncio.Lock:
        """Return the mutex guarding worktree metadata of *repo*."""
        key = str(Path(repo).resolve())
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(
        self,
        repo: str | Path,
        path: str | Path,
        branch: str,
        from_ref: str,
    ) -> WorktreeCreateResult:
        """Create a worktree on *branch*, resetting the branch to *from_ref*."""
        start = time.monotonic()
        wt = Path(path)
        async with self.repo_lock(repo):
            wt.parent.mkdir(parents=True, exist_ok=True)
            await run_git_or_raise(
                ["worktree", "add", "-B", branch, str(wt), from_ref],
                cwd=repo,
                error_prefix=f"Failed to create worktree at {wt}",
            )
            linked = await self.link_submodules(repo, wt)
        head = await self.get_head_commit(wt)
        logger.info("created worktree %s on branch %s", wt, branch)
        return WorktreeCreateResult(
            path=wt,
            base_commit=head,
            duration_ms=int((time.monotonic() - start) * 1000),
            submodules_linked=linked,
        )

    async def create_detached(
        self,
        repo: str | Path,
        path: str | Path,
        commitish: str,
    ) -> WorktreeCreateResult:
        """Create a detached-HEAD worktree at the commit *commitish* resolves to."""
        start = time.monotonic()
        wt = Path(path)
        sha = await resolve_ref(repo, commitish)
        async with self.repo_lock(repo):
            wt.parent.mkdir(parents=True, exist_ok=True)
            await run_git_or_raise(
                ["worktree", "add", "--detach", str(wt), sha],
                cwd=repo,
                error_prefix=f"Failed to create detached worktree at {wt}",
            )
            linked = await self.link_submodules(repo, wt)
        logger.info("created detached worktree %s at %s", wt, sha[:12])
        return WorktreeCreateResult(
            path=wt,
            base_commit=sha,
            duration_ms=int((time.monotonic() - start) * 1000),
            submodules_linked=linked,
        )

    async def create_or_reuse_detached(
        self,
        repo: str | Path,
        path: str | Path,
        commitish: str,
    ) -> WorktreeCreateResult:
        """Reuse a valid worktree at *path*, otherwise create a detached one."""
        wt = Path(path)
        if self.is_valid(wt):
            head = await self.get_head_commit(wt)
            logger.info("reusing worktree %s at %s", wt, (head or "?")[:12])
            return WorktreeCreateResult(path=wt, base_commit=head, reused=True)
        if wt.exists():
            await self.remove_safe(repo, wt)
        return await self.create_detached(repo, wt, commitish)

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    async def remove(self, repo: str | Path, path: str | Path) -> None:
        """Remove a worktree, raising if git refuses."""
        async with self.repo_lock(repo):
            await run_git_or_raise(
                ["worktree", "remove", str(path)],
                cwd=repo,
                error_prefix=f"Failed to remove worktree {path}",
            )

    async def remove_safe(self, repo: str | Path, path: str | Path, *, force: bool = True) -> bool:
        """Best-effort removal that never raises.

        Returns True when neither the directory nor its registration is
        left behind.
        """
        wt = Path(path)
        try:
            async with self.repo_lock(repo):
                args = ["worktree", "remove", str(wt)]
                if force:
                    args.append("--force")
                result = await run_git(args, cwd=repo)
                if not result.success:
                    logger.warning("git worktree remove %s failed: %s", wt, result.stderr.strip())
                _remove_tree(wt)
                prune = await run_git(["worktree", "prune"], cwd=repo)
                if not prune.success:
                    logger.warning("git worktree prune failed: %s", prune.stderr.strip())
        except Exception as exc:
            logger.warning("worktree cleanup of %s raised: %s", wt, exc)
            _remove_tree(wt)
        return not wt.exists() and not os.path.lexists(wt)

    async def prune(self, repo: str | Path) -> None:
        async with self.repo_lock(repo):
            result = await run_git(["worktree", "prune"], cwd=repo)
        if not result.success:
            logger.warning("git worktree prune failed: %s", result.stderr.strip())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def is_valid(path: str | Path) -> bool:
        wt = Path(path)
        return wt.is_dir() and (wt / ".git").exists()

    @staticmethod
    async def get_head_commit(path: str | Path) -> str | None:
        return await run_git_or_none(["rev-parse", "HEAD"], cwd=path)

    async def list_worktrees(self, repo: str | Path) -> list[WorktreeInfo]:
        out = await run_git_or_raise(["worktree", "list", "--porcelain"], cwd=repo)
        return parse_worktree_list(out)

    # ------------------------------------------------------------------
    # Submodules
    # ------------------------------------------------------------------

    async def link_submodules(self, repo: str | Path, worktree: str | Path) -> list[str]:
        """Point each submodule path in *worktree* at the main checkout's copy.

        Falls back to a real ``submodule update --init`` for any submodule
        that cannot be linked.
        """
        wt = Path(worktree)
        if not (wt / ".gitmodules").exists():
            return []
        out = await run_git_or_none(
            ["config", "--file", ".gitmodules", "--get-regexp", r"^submodule\..*\.path$"],
            cwd=wt,
        )
        if not out:
            return []

        linked: list[str] = []
        for line in out.splitlines():
            match = _SUBMODULE_PATH_RE.match(line.strip())
            if not match:
                continue
            name, sub_path = match.groups()
            source = Path(repo).resolve() / sub_path
            dest = wt / sub_path
            if (source / ".git").exists() and _symlink_dir(source, dest):
                # Keep the link out of the job's commits.
                await run_git(["update-index", "--skip-worktree", "--", sub_path], cwd=wt)
                linked.append(sub_path)
                continue
            logger.info("submodule %s: link unavailable, checking out", name)
            result = await run_git(["submodule", "update", "--init", "--", sub_path], cwd=wt)
            if not result.success:
                logger.warning("submodule %s checkout failed: %s", name, result.stderr.strip())
        return linked


def parse_worktree_list(porcelain: str) -> list[WorktreeInfo]:
    """Parse ``git worktree list --porcelain`` output."""
    entries: list[WorktreeInfo] = []
    current: WorktreeInfo | None = None
    for line in porcelain.splitlines():
        if line.startswith("worktree "):
            current = WorktreeInfo(path=Path(line[len("worktree "):]))
            entries.append(current)
        elif current is None:
            continue
        elif line.startswith("HEAD "):
            current.head = line[len("HEAD "):]
        elif line.startswith("branch "):
            current.branch = line[len("branch "):].removeprefix("refs/heads/")
        elif line == "detached":
            current.detached = True
    return entries


def _symlink_dir(source: Path, dest: Path) -> bool:
    try:
        if dest.is_symlink():
            dest.unlink()
        elif dest.is_dir():
            dest.rmdir()
        dest.parent.mkdir(parents=True, exist_ok=True)
        os.symlink(source, dest, target_is_directory=True)
    except OSError as exc:
        logger.debug("symlink %s -> %s failed: %s", dest, source, exc)
        return False
    return True


def _remove_tree(path: Path) -> None:
    if path.is_symlink():
        try:
            path.unlink()
        except OSError as exc:
            logger.warning("could not unlink %s: %s", path, exc)
    elif path.exists():
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            logger.warning("leftover worktree directory could not be deleted: %s", path)
