"""Global test fixtures for attoplan."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from attoplan.plan.models import PlanInstance
from tests.helpers.fixtures import make_plan


def _git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


@pytest.fixture
def git():
    """Synchronous git helper for arranging repository state."""
    return _git


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A fresh repository on ``main`` with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q", "-b", "main")
    _git(repo, "config", "user.email", "test@example.com")
    _git(repo, "config", "user.name", "Test")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("hello\n", encoding="utf-8")
    _git(repo, "add", "README.md")
    _git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture
def diamond_plan() -> PlanInstance:
    """a -> (b, c) -> d"""
    return make_plan(
        [
            {"producerId": "a", "task": "root"},
            {"producerId": "b", "task": "left", "dependencies": ["a"]},
            {"producerId": "c", "task": "right", "dependencies": ["a"]},
            {"producerId": "d", "task": "join", "dependencies": ["b", "c"]},
        ],
        repoPath="/tmp/repo",
    )


def _git_version() -> tuple[int, ...]:
    out = subprocess.run(["git", "--version"], capture_output=True, text=True, check=True).stdout
    digits = out.split()[2].split(".")[:2]
    return tuple(int("".join(ch for ch in part if ch.isdigit()) or 0) for part in digits)


@pytest.fixture
def merge_tree_repo(git_repo: Path) -> Path:
    """Like ``git_repo`` but skips when git lacks ``merge-tree --write-tree``."""
    if _git_version() < (2, 38):
        pytest.skip("git merge-tree --write-tree requires Git 2.38+")
    return git_repo
