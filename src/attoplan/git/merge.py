"""Merge engine.

The primary path never touches a working directory: ``merge-tree
--write-tree`` computes the merged tree in the object database and
``commit-tree`` records it. Conflict resolution works the same way
through blobs and a throwaway index file. A conventional checkout-based
merge remains for gits older than 2.38.
"""

from __future__ import annotations

import logging
import re
import tempfile
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from attoplan.git import repository
from attoplan.git.executor import CommandResult, run_git, run_git_or_none, run_git_or_raise
from attoplan.git.worktrees import WorktreeManager

logger = logging.getLogger(__name__)

UNSUPPORTED_MERGE_TREE = "git merge-tree --write-tree requires Git 2.38 or later"

_CONFLICT_IN_RE = re.compile(r"CONFLICT.*?:\s*Merge conflict in\s+(.+)")
_MODIFY_DELETE_RE = re.compile(r"CONFLICT \(modify/delete\):\s*(.+?)\s+deleted in")
_UNSUPPORTED_MARKERS = (
    "is not a git command",
    "unknown option",
    "unrecognized option",
    "usage: git merge-tree",
)
_DEFAULT_FILE_MODE = "100644"


@dataclass(slots=True)
class MergeTreeResult:
    success: bool
    tree_sha: str | None = None
    has_conflicts: bool = False
    conflict_files: list[str] = field(default_factory=list)
    unsupported: bool = False
    error: str | None = None


@dataclass(slots=True)
class MergeResult:
    success: bool
    has_conflicts: bool = False
    conflict_files: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass(slots=True)
class MergeOptions:
    source: str
    cwd: str | Path
    message: str | None = None
    fast_forward: bool = True
    squash: bool = False
    no_commit: bool = False


@dataclass(slots=True)
class IntegrationResult:
    success: bool
    commit: str | None = None
    strategy: Literal["merge-tree", "checkout", "up-to-date", "none"] = "none"
    conflict_files: list[str] = field(default_factory=list)
    error: str | None = None


# ---------------------------------------------------------------------------
# Checkout-free merge
# ---------------------------------------------------------------------------


def parse_conflict_files(output: str) -> list[str]:
    """Extract conflicting paths from merge-tree's informational messages."""
    files: list[str] = []
    for line in output.splitlines():
        for pattern in (_CONFLICT_IN_RE, _MODIFY_DELETE_RE):
            match = pattern.search(line)
            if match:
                name = match.group(1).strip()
                if name not in files:
                    files.append(name)
    return files


def classify_merge_tree_output(result: CommandResult) -> MergeTreeResult:
    if result.success:
        return MergeTreeResult(success=True, tree_sha=result.stdout.strip())

    if "CONFLICT" in result.stdout or "CONFLICT" in result.stderr:
        files = parse_conflict_files(result.stdout + "\n" + result.stderr)
        first = result.stdout.split("\n", 1)[0].strip()
        partial = first if re.fullmatch(r"[0-9a-f]{40}|[0-9a-f]{64}", first) else None
        return MergeTreeResult(
            success=False,
            tree_sha=partial,
            has_conflicts=True,
            conflict_files=files,
            error=f"Merge conflicts in: {', '.join(files)}",
        )

    if any(marker in result.stderr for marker in _UNSUPPORTED_MARKERS):
        return MergeTreeResult(success=False, unsupported=True, error=UNSUPPORTED_MERGE_TREE)

    return MergeTreeResult(
        success=False,
        error=result.stderr.strip() or "Merge computation failed for unknown reason",
    )


async def merge_without_checkout(repo: str | Path, source: str, target: str) -> MergeTreeResult:
    """Three-way merge *source* into *target* as a tree object.

    Conflicts come back as ``has_conflicts`` with the file list and, when
    git produced one, the partial tree containing conflict markers.
    """
    logger.debug("merge-tree %s into %s", source, target)
    result = await run_git(["merge-tree", "--write-tree", target, source], cwd=repo)
    outcome = classify_merge_tree_output(result)
    if outcome.success:
        logger.debug("merge-tree produced %s", (outcome.tree_sha or "")[:12])
    elif outcome.has_conflicts:
        logger.info("merge of %s into %s conflicts in %s", source, target, outcome.conflict_files)
    return outcome


async def commit_tree(repo: str | Path, tree_sha: str, parents: Sequence[str], message: str) -> str:
    """Create a commit object for *tree_sha* with the given parents."""
    args = ["commit-tree", tree_sha]
    for parent in parents:
        args.extend(["-p", parent])
    args.extend(["-m", message])
    sha = await run_git_or_raise(args, cwd=repo, error_prefix="commit-tree failed")
    logger.debug("commit-tree %s -> %s", tree_sha[:12], sha[:12])
    return sha


# ---------------------------------------------------------------------------
# Object-level conflict resolution
# ---------------------------------------------------------------------------


async def read_file_at_tree(repo: str | Path, tree_sha: str, path: str) -> bytes | None:
    """Return the blob content at *path* inside *tree_sha*, or None if absent."""
    result = await run_git(["cat-file", "blob", f"{tree_sha}:{path}"], cwd=repo)
    if not result.success:
        return None
    return result.stdout_bytes


async def write_blob(repo: str | Path, data: bytes | str) -> str:
    """Store *data* in the object database and return its id."""
    payload = data.encode("utf-8") if isinstance(data, str) else data
    return await run_git_or_raise(
        ["hash-object", "-w", "--stdin"],
        cwd=repo,
        input_data=payload,
        error_prefix="Failed to write blob",
    )


async def splice_tree(repo: str | Path, base_tree: str, replacements: Mapping[str, str]) -> str:
    """Return a new tree equal to *base_tree* with *replacements* (path -> blob) applied.

    Uses a private index file so the repository's own index is untouched
    and concurrent splices do not contend.
    """
    with tempfile.TemporaryDirectory(prefix="attoplan-index-") as tmp:
        env = {"GIT_INDEX_FILE": str(Path(tmp) / "index")}
        await run_git_or_raise(["read-tree", base_tree], cwd=repo, env=env)
        for path, blob in replacements.items():
            mode = await _mode_at(repo, base_tree, path) or _DEFAULT_FILE_MODE
            await run_git_or_raise(
                ["update-index", "--add", "--cacheinfo", f"{mode},{blob},{path}"],
                cwd=repo,
                env=env,
                error_prefix=f"Failed to stage {path}",
            )
        return await run_git_or_raise(["write-tree"], cwd=repo, env=env)


async def _mode_at(repo: str | Path, tree_sha: str, path: str) -> str | None:
    out = await run_git_or_none(["ls-tree", tree_sha, "--", path], cwd=repo)
    if not out:
        return None
    return out.split(None, 1)[0]


# ---------------------------------------------------------------------------
# Checkout-based fallback
# ---------------------------------------------------------------------------


async def merge(options: MergeOptions) -> MergeResult:
    """Run ``git merge`` inside an existing checkout."""
    args = ["merge"]
    if options.no_commit:
        args.append("--no-commit")
    if options.squash:
        args.append("--squash")
    elif not options.fast_forward:
        args.append("--no-ff")
    if not options.squash and not options.no_commit:
        if options.message:
            args.extend(["-m", options.message])
        else:
            args.append("--no-edit")
    args.append(options.source)

    result = await run_git(args, cwd=options.cwd)
    if result.success:
        if options.squash:
            msg = options.message or f"Merge branch '{options.source}'"
            commit = await run_git(["commit", "-m", msg], cwd=options.cwd)
            if not commit.success and "nothing to commit" not in commit.stdout + commit.stderr:
                logger.warning("squash commit failed: %s", commit.stderr.strip())
        return MergeResult(success=True)

    if "CONFLICT" in result.stdout or "CONFLICT" in result.stderr:
        conflicts = await list_conflicts(options.cwd)
        return MergeResult(
            success=False,
            has_conflicts=True,
            conflict_files=conflicts,
            error="Merge conflicts detected",
        )

    return MergeResult(success=False, error=result.stderr.strip() or "Merge failed")


async def list_conflicts(cwd: str | Path) -> list[str]:
    out = await run_git_or_none(["diff", "--name-only", "--diff-filter=U"], cwd=cwd)
    if not out:
        return []
    return [line for line in out.splitlines() if line]


async def abort(cwd: str | Path) -> None:
    await run_git(["merge", "--abort"], cwd=cwd)


async def is_in_progress(cwd: str | Path) -> bool:
    out = await run_git_or_none(["rev-parse", "--git-path", "MERGE_HEAD"], cwd=cwd)
    if not out:
        return False
    merge_head = Path(out)
    if not merge_head.is_absolute():
        merge_head = Path(cwd) / merge_head
    return merge_head.exists()


async def resolve_by_side(cwd: str | Path, path: str, side: Literal["ours", "theirs"]) -> None:
    await run_git_or_raise(["checkout", f"--{side}", "--", path], cwd=cwd)
    await run_git_or_raise(["add", "--", path], cwd=cwd)


async def continue_after_resolve(cwd: str | Path, message: str) -> bool:
    await run_git(["add", "-A"], cwd=cwd)
    result = await run_git(["commit", "-m", message], cwd=cwd)
    if not result.success:
        logger.warning("commit after resolve failed: %s", result.stderr.strip())
    return result.success


# ---------------------------------------------------------------------------
# Integration into a target branch
# ---------------------------------------------------------------------------


async def integrate(
    repo: str | Path,
    source: str,
    target_branch: str,
    message: str,
    *,
    worktrees: WorktreeManager | None = None,
    scratch_dir: str | Path | None = None,
) -> IntegrationResult:
    """Merge *source* into *target_branch* and advance the branch.

    Uses merge-tree/commit-tree when available. If git is too old and a
    :class:`WorktreeManager` is supplied, the merge runs in a throwaway
    detached worktree instead.
    """
    target_sha = await repository.resolve_ref(repo, target_branch)
    source_sha = await repository.resolve_ref(repo, source)
    if await repository.is_ancestor(repo, source_sha, target_sha):
        return IntegrationResult(success=True, commit=target_sha, strategy="up-to-date")

    outcome = await merge_without_checkout(repo, source_sha, target_sha)
    if outcome.success and outcome.tree_sha:
        commit = await commit_tree(repo, outcome.tree_sha, [target_sha, source_sha], message)
        error = await _advance_branch(repo, target_branch, commit, target_sha, worktrees)
        if error:
            return IntegrationResult(success=False, strategy="merge-tree", error=error)
        return IntegrationResult(success=True, commit=commit, strategy="merge-tree")
    if outcome.has_conflicts:
        return IntegrationResult(
            success=False,
            strategy="merge-tree",
            conflict_files=outcome.conflict_files,
            error=outcome.error,
        )
    if not outcome.unsupported or worktrees is None:
        return IntegrationResult(success=False, error=outcome.error)

    logger.info("falling back to checkout merge for %s", target_branch)
    base = Path(scratch_dir) if scratch_dir else Path(repo) / ".worktrees"
    scratch = base / f"_integrate-{uuid.uuid4().hex[:8]}"
    try:
        await worktrees.create_detached(repo, scratch, target_sha)
        result = await merge(
            MergeOptions(source=source_sha, cwd=scratch, message=message, fast_forward=False)
        )
        if not result.success:
            if result.has_conflicts:
                await abort(scratch)
            return IntegrationResult(
                success=False,
                strategy="checkout",
                conflict_files=result.conflict_files,
                error=result.error,
            )
        commit = await repository.get_head(scratch)
        if not commit:
            return IntegrationResult(success=False, strategy="checkout", error="Merge produced no commit")
        error = await _advance_branch(repo, target_branch, commit, target_sha, worktrees)
        if error:
            return IntegrationResult(success=False, strategy="checkout", error=error)
        return IntegrationResult(success=True, commit=commit, strategy="checkout")
    finally:
        await worktrees.remove_safe(repo, scratch)


async def _advance_branch(
    repo: str | Path,
    branch: str,
    commit: str,
    expected_old: str,
    worktrees: WorktreeManager | None,
) -> str | None:
    """Move *branch* from *expected_old* to *commit*.

    A branch that no worktree has checked out moves with a
    compare-and-swap ``update-ref``. A checked-out branch is only
    fast-forwarded inside its own worktree, and only when that worktree
    has no local changes, untracked files included. Returns an error
    message when the branch was left where it was.
    """
    checkout = await checkout_of(repo, branch, worktrees)
    if checkout is None:
        await repository.update_ref(repo, f"refs/heads/{branch}", commit, expected_old)
        logger.info("advanced %s to %s", branch, commit[:12])
        return None

    if await repository.has_changes(checkout, include_untracked=True):
        logger.warning("%s is checked out at %s with local changes; not advancing", branch, checkout)
        return (
            f"Target branch {branch} is checked out at {checkout} with local changes; "
            "commit or stash them, then finalize the plan again"
        )
    head = await repository.get_head(checkout)
    if head != expected_old:
        return f"Target branch {branch} moved to {(head or 'unknown')[:12]} during the merge"
    result = await run_git(["merge", "--ff-only", "--quiet", commit], cwd=checkout)
    if not result.success:
        reason = result.stderr.strip() or result.stdout.strip() or f"exit code {result.exit_code}"
        return f"Fast-forward of {branch} in {checkout} failed: {reason}"
    logger.info("fast-forwarded %s in %s to %s", branch, checkout, commit[:12])
    return None


async def checkout_of(repo: str | Path, branch: str, worktrees: WorktreeManager | None = None) -> Path | None:
    """Return the worktree that has *branch* checked out, if any."""
    manager = worktrees or WorktreeManager()
    for info in await manager.list_worktrees(repo):
        if info.branch == branch and info.path.is_dir():
            return info.path
    return None
