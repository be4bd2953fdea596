"""Repository-level helpers: refs, commits, staging and ignore files."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from attoplan.git.executor import run_git, run_git_or_none, run_git_or_raise

logger = logging.getLogger(__name__)


async def resolve_ref(repo: str | Path, ref: str) -> str:
    """Resolve *ref* to a full commit SHA, raising when it does not exist."""
    return await run_git_or_raise(
        ["rev-parse", "--verify", f"{ref}^{{commit}}"],
        cwd=repo,
        error_prefix=f"Cannot resolve ref '{ref}'",
    )


async def get_head(cwd: str | Path) -> str | None:
    return await run_git_or_none(["rev-parse", "HEAD"], cwd=cwd)


async def has_changes(cwd: str | Path, *, include_untracked: bool = True) -> bool:
    args = ["status", "--porcelain"]
    if not include_untracked:
        args.append("--untracked-files=no")
    out = await run_git_or_raise(args, cwd=cwd)
    return bool(out)


async def stage_all(cwd: str | Path) -> None:
    await run_git_or_raise(["add", "-A"], cwd=cwd, error_prefix="Failed to stage changes")


async def commit(cwd: str | Path, message: str, *, allow_empty: bool = False) -> bool:
    """Commit the index. Returns False when there was nothing to commit."""
    args = ["commit", "-m", message]
    if allow_empty:
        args.append("--allow-empty")
    result = await run_git(args, cwd=cwd)
    if result.success:
        return True
    output = result.stdout + result.stderr
    if "nothing to commit" in output or "nothing added to commit" in output:
        return False
    await run_git_or_raise(args, cwd=cwd, error_prefix="Commit failed")
    return True


async def update_ref(repo: str | Path, ref: str, sha: str, old_sha: str | None = None) -> None:
    """Point *ref* at *sha*; with *old_sha* the update is compare-and-swap."""
    args = ["update-ref", ref, sha]
    if old_sha:
        args.append(old_sha)
    await run_git_or_raise(args, cwd=repo, error_prefix=f"Failed to update {ref}")


async def changed_files(repo: str | Path, from_ref: str, to_ref: str) -> list[str]:
    out = await run_git_or_raise(["diff", "--name-only", from_ref, to_ref], cwd=repo)
    return [line for line in out.splitlines() if line]


async def ensure_ignored(repo: str | Path, patterns: Iterable[str], *, local: bool = True) -> bool:
    """Append any missing *patterns* to the ignore file. Returns True if it changed.

    With *local* the patterns go to the repository's ``info/exclude``,
    otherwise to the tracked ``.gitignore``.
    """
    if local:
        rel = await run_git_or_raise(["rev-parse", "--git-path", "info/exclude"], cwd=repo)
        path = Path(rel) if Path(rel).is_absolute() else Path(repo) / rel
        path.parent.mkdir(parents=True, exist_ok=True)
    else:
        path = Path(repo) / ".gitignore"
    existing = path.read_text(encoding="utf-8") if path.exists() else ""
    present = {line.strip() for line in existing.splitlines()}
    missing = [p for p in patterns if p not in present]
    if not missing:
        return False
    prefix = "" if not existing or existing.endswith("\n") else "\n"
    with path.open("a", encoding="utf-8") as handle:
        handle.write(prefix + "\n".join(missing) + "\n")
    logger.debug("added %s to %s", missing, path)
    return True


async def is_ancestor(repo: str | Path, ancestor: str, descendant: str) -> bool:
    result = await run_git(["merge-base", "--is-ancestor", ancestor, descendant], cwd=repo)
    return result.success
