"""Attoplan error hierarchy."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from attoplan.git.executor import CommandResult


class ErrorCategory(StrEnum):
    """Category of error for classification and handling."""

    VALIDATION = "validation"
    GIT = "git"
    MERGE = "merge"
    WORKTREE = "worktree"
    STATE = "state"
    PERSISTENCE = "persistence"
    CONFIGURATION = "configuration"
    EXECUTION = "execution"
    INTERNAL = "internal"


class PlanError(Exception):
    """Base error for all attoplan exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


class PlanValidationError(PlanError):
    """A plan specification failed validation.

    Carries every distinct problem found, not just the first one.
    """

    def __init__(self, errors: list[str], message: str = "Invalid plan specification") -> None:
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            details={"errors": list(errors)},
        )
        self.errors = list(errors)

    def __str__(self) -> str:
        if not self.errors:
            return super().__str__()
        return f"{super().__str__()}: " + "; ".join(self.errors)


class GitCommandError(PlanError):
    """A git invocation that had to succeed did not."""

    def __init__(self, args: list[str], result: CommandResult, *, prefix: str = "Git command failed") -> None:
        reason = result.stderr.strip() or result.stdout.strip() or f"exit code {result.exit_code}"
        super().__init__(
            f"{prefix}: {reason}",
            category=ErrorCategory.GIT,
            details={"args": list(args), "exit_code": result.exit_code},
        )
        self.git_args = list(args)
        self.result = result


class UnsupportedGitVersionError(PlanError):
    """The installed git lacks a feature the caller required."""

    def __init__(self, message: str = "git merge-tree --write-tree requires Git 2.38 or later") -> None:
        super().__init__(message, category=ErrorCategory.GIT)


class InvalidTransitionError(PlanError):
    """A node status change that is not an edge of the transition table."""

    def __init__(self, node_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Invalid transition for node {node_id}: {current} -> {target}",
            category=ErrorCategory.STATE,
            details={"node_id": node_id, "from": current, "to": target},
        )
        self.node_id = node_id
        self.current = current
        self.target = target


class PlanNotFoundError(PlanError):
    """No plan with the given id is loaded."""

    def __init__(self, plan_id: str) -> None:
        super().__init__(f"Plan not found: {plan_id}", category=ErrorCategory.STATE)
        self.plan_id = plan_id


class SchemaVersionError(PlanError):
    """A persisted record was written by a newer schema than this code understands."""

    def __init__(self, found: int, supported: int) -> None:
        super().__init__(
            f"Persisted schema version {found} is newer than supported version {supported}",
            category=ErrorCategory.PERSISTENCE,
        )
        self.found = found
        self.supported = supported


class LockTimeoutError(PlanError):
    """Another process held a state-file lock for longer than allowed."""

    def __init__(self, path: str, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout:g}s waiting for lock {path}",
            category=ErrorCategory.PERSISTENCE,
            retryable=True,
            details={"path": path, "timeout": timeout},
        )
        self.path = path
        self.timeout = timeout


class ConfigurationError(PlanError):
    """Invalid or missing configuration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION, retryable=False)


@dataclass(slots=True)
class CleanupReport:
    """Best-effort cleanup outcome.

    Failures are collected here and logged; they are never raised.
    """

    removed: list[str] = field(default_factory=list)
    failures: list[tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def add_failure(self, resource: str, message: str) -> None:
        self.failures.append((resource, message))

    def summary(self) -> str:
        return "; ".join(f"{resource}: {message}" for resource, message in self.failures)
