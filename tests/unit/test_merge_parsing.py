"""Tests for merge-tree output classification."""

from __future__ import annotations

from attoplan.git.executor import CommandResult
from attoplan.git.merge import (
    UNSUPPORTED_MERGE_TREE,
    classify_merge_tree_output,
    parse_conflict_files,
)

TREE = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"
TREE_256 = "a" * 64


def _result(stdout: str = "", stderr: str = "", code: int = 1) -> CommandResult:
    return CommandResult(success=code == 0, stdout=stdout, stderr=stderr, exit_code=code)


# ---------------------------------------------------------------------------
# parse_conflict_files
# ---------------------------------------------------------------------------


def test_parse_content_conflicts() -> None:
    output = (
        "Auto-merging file.txt\n"
        "CONFLICT (content): Merge conflict in file.txt\n"
        "CONFLICT (add/add): Merge conflict in src/app.py\n"
    )
    assert parse_conflict_files(output) == ["file.txt", "src/app.py"]


def test_parse_modify_delete() -> None:
    output = "CONFLICT (modify/delete): docs/old.md deleted in theirs and modified in HEAD.\n"
    assert parse_conflict_files(output) == ["docs/old.md"]


def test_parse_deduplicates_in_order() -> None:
    output = (
        "CONFLICT (content): Merge conflict in b.txt\n"
        "CONFLICT (content): Merge conflict in a.txt\n"
        "CONFLICT (content): Merge conflict in b.txt\n"
    )
    assert parse_conflict_files(output) == ["b.txt", "a.txt"]


def test_parse_ignores_noise() -> None:
    assert parse_conflict_files("Auto-merging x\nnothing here\n") == []


# ---------------------------------------------------------------------------
# classify_merge_tree_output
# ---------------------------------------------------------------------------


def test_clean_merge() -> None:
    outcome = classify_merge_tree_output(_result(stdout=f"{TREE}\n", code=0))
    assert outcome.success
    assert outcome.tree_sha == TREE
    assert not outcome.has_conflicts


def test_conflict_with_partial_tree() -> None:
    stdout = (
        f"{TREE}\n"
        f"100644 {'1' * 40} 1\tfile.txt\n"
        f"100644 {'2' * 40} 2\tfile.txt\n"
        "\n"
        "Auto-merging file.txt\n"
        "CONFLICT (content): Merge conflict in file.txt\n"
    )
    outcome = classify_merge_tree_output(_result(stdout=stdout))
    assert not outcome.success
    assert outcome.has_conflicts
    assert outcome.tree_sha == TREE
    assert outcome.conflict_files == ["file.txt"]
    assert outcome.error == "Merge conflicts in: file.txt"


def test_conflict_accepts_sha256_tree() -> None:
    stdout = f"{TREE_256}\nCONFLICT (content): Merge conflict in a\n"
    assert classify_merge_tree_output(_result(stdout=stdout)).tree_sha == TREE_256


def test_conflict_without_tree_line() -> None:
    outcome = classify_merge_tree_output(_result(stderr="CONFLICT (content): Merge conflict in x\n"))
    assert outcome.has_conflicts
    assert outcome.tree_sha is None
    assert outcome.conflict_files == ["x"]


def test_unsupported_git() -> None:
    outcome = classify_merge_tree_output(
        _result(stderr="error: unknown option `write-tree'\nusage: git merge-tree ...", code=129)
    )
    assert outcome.unsupported
    assert not outcome.has_conflicts
    assert outcome.error == UNSUPPORTED_MERGE_TREE


def test_unsupported_git_usage_only() -> None:
    outcome = classify_merge_tree_output(
        CommandResult(False, "", "usage: git merge-tree [--write-tree] [<options>] <branch1> <branch2>", 129)
    )
    assert outcome.unsupported
    assert outcome.error == UNSUPPORTED_MERGE_TREE


def test_other_failure() -> None:
    outcome = classify_merge_tree_output(_result(stderr="fatal: bad object deadbeef\n", code=128))
    assert not outcome.success
    assert not outcome.unsupported
    assert outcome.error == "fatal: bad object deadbeef"
    assert classify_merge_tree_output(_result()).error == "Merge computation failed for unknown reason"
