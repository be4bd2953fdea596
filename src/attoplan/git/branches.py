"""Branch queries and mutations."""

from __future__ import annotations

import logging
from pathlib import Path

from attoplan.git.executor import run_git, run_git_or_none, run_git_or_raise

logger = logging.getLogger(__name__)


async def exists(repo: str | Path, name: str) -> bool:
    result = await run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{name}"], cwd=repo)
    return result.success


async def remote_exists(repo: str | Path, name: str, remote: str = "origin") -> bool:
    result = await run_git(
        ["show-ref", "--verify", "--quiet", f"refs/remotes/{remote}/{name}"], cwd=repo
    )
    return result.success


async def current_or_none(repo: str | Path) -> str | None:
    """Return the checked-out branch name, or ``None`` on a detached HEAD."""
    name = await run_git_or_none(["symbolic-ref", "--short", "-q", "HEAD"], cwd=repo)
    return name or None


async def create(repo: str | Path, name: str, from_ref: str) -> None:
    await run_git_or_raise(
        ["branch", name, from_ref],
        cwd=repo,
        error_prefix=f"Failed to create branch '{name}'",
    )
    logger.debug("created branch %s from %s", name, from_ref)


async def delete_local(repo: str | Path, name: str, *, force: bool = False) -> bool:
    """Delete a local branch. Returns False when git refused."""
    result = await run_git(["branch", "-D" if force else "-d", name], cwd=repo)
    if not result.success:
        logger.debug("branch delete %s failed: %s", name, result.stderr.strip())
    return result.success


async def get_commit(repo: str | Path, ref: str) -> str | None:
    return await run_git_or_none(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], cwd=repo)
