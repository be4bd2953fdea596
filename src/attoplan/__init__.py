"""Attoplan: dependency-graph orchestration of coding-agent jobs in git worktrees."""

__version__ = "0.1.0"
