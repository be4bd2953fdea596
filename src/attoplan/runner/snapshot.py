"""Per-plan snapshot branch.

Node results are merged into ``attoplan/snapshot/<plan id>``, a branch no
worktree has checked out, so integrating a node never touches anyone's
checkout. Dependent nodes start from the snapshot. Once every node has
succeeded the snapshot lands in the plan's target branch with a single
final merge.
"""

from __future__ import annotations

import asyncio
import logging

from attoplan.errors import CleanupReport
from attoplan.git.merge import IntegrationResult
from attoplan.git.operations import GitOperations
from attoplan.plan.models import PlanInstance, PlanNode, SnapshotInfo

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "attoplan/snapshot/"


def snapshot_branch(plan: PlanInstance) -> str:
    return f"{SNAPSHOT_PREFIX}{plan.id}"


class SnapshotManager:
    """Creates, feeds, lands and removes plan snapshot branches."""

    def __init__(self, git: GitOperations) -> None:
        self.git = git
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, key: str) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    def base_ref_for(self, plan: PlanInstance, node: PlanNode) -> str:
        """Where a node's worktree starts: its own base, the plan base, or the snapshot."""
        if node.base_branch:
            return node.base_branch
        if not node.dependencies:
            return plan.base_branch
        return plan.snapshot.branch if plan.snapshot else plan.target_branch

    async def ensure(self, plan: PlanInstance) -> SnapshotInfo:
        """Return the plan's snapshot, branching it off the target branch if needed."""
        repo = plan.repo_path
        if plan.snapshot is not None and await self.git.branches.exists(repo, plan.snapshot.branch):
            return plan.snapshot
        branch = snapshot_branch(plan)
        base = await self.git.repository.resolve_ref(repo, plan.target_branch)
        if await self.git.branches.exists(repo, branch):
            logger.info("plan %s: reusing snapshot branch %s", plan.id, branch)
        else:
            if plan.snapshot is not None:
                logger.warning("plan %s: snapshot branch %s disappeared, recreating it", plan.id, branch)
            await self.git.branches.create(repo, branch, base)
            logger.info("plan %s: snapshot branch %s created at %s", plan.id, branch, base[:12])
        plan.snapshot = SnapshotInfo(branch=branch, base_commit=base)
        return plan.snapshot

    async def integrate_node(self, plan: PlanInstance, node: PlanNode, commit: str) -> IntegrationResult:
        """Merge a node's commit into the snapshot branch."""
        async with self._lock(plan.id):
            snapshot = await self.ensure(plan)
            return await self.git.merge.integrate(
                plan.repo_path,
                commit,
                snapshot.branch,
                f"Merge {node.producer_id} ({node.name}) into snapshot of {plan.name}",
                worktrees=self.git.worktrees,
                scratch_dir=plan.worktree_root,
            )

    async def finalize(self, plan: PlanInstance) -> IntegrationResult:
        """Merge the snapshot into the target branch.

        Merges into one target branch of one repository run one at a time.
        A target checked out with local changes is left alone and the
        refusal comes back as a failed result.
        """
        snapshot = plan.snapshot
        if snapshot is None:
            return IntegrationResult(success=True, strategy="none")
        async with self._lock(f"{plan.repo_path}\0{plan.target_branch}"):
            logger.info("plan %s: merging %s into %s", plan.id, snapshot.branch, plan.target_branch)
            return await self.git.merge.integrate(
                plan.repo_path,
                snapshot.branch,
                plan.target_branch,
                f"Plan {plan.name}: final merge from snapshot",
                worktrees=self.git.worktrees,
                scratch_dir=plan.worktree_root,
            )

    async def cleanup(self, plan: PlanInstance, report: CleanupReport) -> CleanupReport:
        """Remove the snapshot worktree and branch. Never raises."""
        snapshot = plan.snapshot
        if snapshot is None:
            return report
        if snapshot.worktree_path:
            try:
                if await self.git.worktrees.remove_safe(plan.repo_path, snapshot.worktree_path):
                    report.removed.append(snapshot.worktree_path)
                else:
                    report.add_failure(snapshot.worktree_path, "worktree directory or registration left behind")
            except Exception as exc:
                report.add_failure(snapshot.worktree_path, str(exc))
        branch = snapshot.branch
        try:
            if await self.git.branches.delete_local(plan.repo_path, branch, force=True):
                report.removed.append(f"branch:{branch}")
                plan.snapshot = None
            else:
                report.add_failure(f"branch:{branch}", "branch delete failed")
        except Exception as exc:
            report.add_failure(f"branch:{branch}", str(exc))
        return report
