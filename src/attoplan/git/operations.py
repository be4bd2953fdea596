"""Git-operations facade handed to the plan runtime."""

from __future__ import annotations

from types import ModuleType

from attoplan.git import branches, merge, repository
from attoplan.git.worktrees import WorktreeManager


class GitOperations:
    """Bundles branch, repository, merge and worktree operations.

    Each attribute can be replaced on its own, e.g. with a mock.
    """

    def __init__(self, worktrees: WorktreeManager | None = None) -> None:
        self.worktrees = worktrees or WorktreeManager()
        self.branches: ModuleType = branches
        self.repository: ModuleType = repository
        self.merge: ModuleType = merge
