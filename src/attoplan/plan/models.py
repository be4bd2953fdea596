"""Plan data model.

Specs (``PlanSpec``/``JobSpec``/``GroupSpec``) are the immutable user
input. ``PlanInstance`` is the built, UUID-addressed runtime graph with
its mutable per-node and per-group execution state.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class NodeStatus(StrEnum):
    PENDING = "pending"
    READY = "ready"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELED = "canceled"


class PlanStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = frozenset(
    {NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.BLOCKED, NodeStatus.CANCELED}
)

TERMINAL_PLAN_STATUSES = frozenset({PlanStatus.SUCCEEDED, PlanStatus.FAILED, PlanStatus.CANCELED})

# Closed transition table. Anything not listed is rejected.
TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.READY, NodeStatus.BLOCKED, NodeStatus.CANCELED}),
    NodeStatus.READY: frozenset({NodeStatus.SCHEDULED, NodeStatus.BLOCKED, NodeStatus.CANCELED}),
    NodeStatus.SCHEDULED: frozenset({NodeStatus.RUNNING, NodeStatus.FAILED, NodeStatus.CANCELED}),
    NodeStatus.RUNNING: frozenset({NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.CANCELED}),
    NodeStatus.SUCCEEDED: frozenset(),
    NodeStatus.FAILED: frozenset({NodeStatus.PENDING}),
    NodeStatus.CANCELED: frozenset({NodeStatus.PENDING}),
    NodeStatus.BLOCKED: frozenset({NodeStatus.PENDING}),
}


def is_terminal(status: NodeStatus) -> bool:
    return status in TERMINAL_STATUSES


def _first(raw: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return default


# ---------------------------------------------------------------------------
# Specification (input)
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class JobSpec:
    producer_id: str
    task: str = ""
    name: str | None = None
    work: str | None = None
    prechecks: str | None = None
    postchecks: str | None = None
    instructions: str | None = None
    base_branch: str | None = None
    dependencies: list[str] = field(default_factory=list)
    group: str | None = None
    expects_no_changes: bool = False
    auto_heal: bool = False

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> JobSpec:
        deps = _first(raw, "dependencies", "deps", default=[])
        return cls(
            producer_id=str(_first(raw, "producerId", "producer_id", default="")).strip(),
            task=str(_first(raw, "task", default="")),
            name=_first(raw, "name"),
            work=_first(raw, "work"),
            prechecks=_first(raw, "prechecks"),
            postchecks=_first(raw, "postchecks"),
            instructions=_first(raw, "instructions"),
            base_branch=_first(raw, "baseBranch", "base_branch"),
            dependencies=[str(d) for d in deps] if isinstance(deps, list) else [],
            group=_first(raw, "group"),
            expects_no_changes=bool(_first(raw, "expectsNoChanges", "expects_no_changes", default=False)),
            auto_heal=bool(_first(raw, "autoHeal", "auto_heal", default=False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class GroupSpec:
    name: str
    jobs: list[JobSpec] = field(default_factory=list)
    groups: list[GroupSpec] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> GroupSpec:
        return cls(
            name=str(raw.get("name", "")),
            jobs=[JobSpec.from_dict(j) for j in raw.get("jobs") or [] if isinstance(j, dict)],
            groups=[GroupSpec.from_dict(g) for g in raw.get("groups") or [] if isinstance(g, dict)],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class PlanSpec:
    name: str
    repo_path: str = "."
    jobs: list[JobSpec] = field(default_factory=list)
    groups: list[GroupSpec] = field(default_factory=list)
    base_branch: str = "main"
    target_branch: str | None = None
    max_parallel: int | None = None
    worktree_root: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PlanSpec:
        max_parallel = _first(raw, "maxParallel", "max_parallel")
        return cls(
            name=str(_first(raw, "name", default="plan")),
            repo_path=str(_first(raw, "repoPath", "repo_path", default=".")),
            jobs=[JobSpec.from_dict(j) for j in raw.get("jobs") or [] if isinstance(j, dict)],
            groups=[GroupSpec.from_dict(g) for g in raw.get("groups") or [] if isinstance(g, dict)],
            base_branch=str(_first(raw, "baseBranch", "base_branch", default="main")),
            target_branch=_first(raw, "targetBranch", "target_branch"),
            max_parallel=int(max_parallel) if max_parallel is not None else None,
            worktree_root=_first(raw, "worktreeRoot", "worktree_root"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Runtime graph
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class PlanNode:
    id: str
    producer_id: str
    name: str
    task: str = ""
    work: str | None = None
    prechecks: str | None = None
    postchecks: str | None = None
    instructions: str | None = None
    base_branch: str | None = None
    expects_no_changes: bool = False
    auto_heal: bool = False
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    group_id: str | None = None

    @property
    def is_root(self) -> bool:
        return not self.dependencies

    @property
    def is_leaf(self) -> bool:
        return not self.dependents


@dataclass(slots=True)
class NodeExecutionState:
    status: NodeStatus = NodeStatus.PENDING
    version: int = 0
    attempts: int = 0
    scheduled_at: str | None = None
    started_at: str | None = None
    ended_at: str | None = None
    pid: int | None = None
    worktree_path: str | None = None
    base_commit: str | None = None
    completed_commit: str | None = None
    error: str | None = None
    failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = str(self.status)
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> NodeExecutionState:
        fields = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
        fields["status"] = NodeStatus(fields.get("status", NodeStatus.PENDING))
        return cls(**fields)


@dataclass(slots=True)
class GroupInstance:
    id: str
    name: str
    path: str
    parent_group_id: str | None = None
    child_group_ids: list[str] = field(default_factory=list)
    node_ids: list[str] = field(default_factory=list)
    all_node_ids: list[str] = field(default_factory=list)
    total_nodes: int = 0


@dataclass(slots=True)
class GroupExecutionState:
    status: PlanStatus = PlanStatus.PENDING
    version: int = 0
    running: int = 0
    succeeded: int = 0
    failed: int = 0
    blocked: int = 0
    canceled: int = 0
    started_at: str | None = None
    ended_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = str(self.status)
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> GroupExecutionState:
        fields = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
        fields["status"] = PlanStatus(fields.get("status", PlanStatus.PENDING))
        return cls(**fields)


@dataclass(slots=True)
class SnapshotInfo:
    """Transient integration branch owned by a plan.

    Node results accumulate here; the target branch only moves in the
    final merge. ``worktree_path`` is set only for snapshots that have a
    checkout of their own.
    """

    branch: str
    worktree_path: str | None = None
    base_commit: str | None = None


@dataclass(slots=True)
class PlanInstance:
    id: str
    spec: PlanSpec
    repo_path: str
    base_branch: str
    target_branch: str
    worktree_root: str
    max_parallel: int
    nodes: dict[str, PlanNode] = field(default_factory=dict)
    producer_id_to_node_id: dict[str, str] = field(default_factory=dict)
    roots: list[str] = field(default_factory=list)
    leaves: list[str] = field(default_factory=list)
    node_states: dict[str, NodeExecutionState] = field(default_factory=dict)
    groups: dict[str, GroupInstance] = field(default_factory=dict)
    group_states: dict[str, GroupExecutionState] = field(default_factory=dict)
    group_path_to_id: dict[str, str] = field(default_factory=dict)
    is_paused: bool = False
    state_version: int = 0
    snapshot: SnapshotInfo | None = None
    final_commit: str | None = None
    final_merge_error: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    started_at: str | None = None
    ended_at: str | None = None

    @property
    def name(self) -> str:
        return self.spec.name

    def node_by_producer_id(self, producer_id: str) -> PlanNode | None:
        node_id = self.producer_id_to_node_id.get(producer_id)
        return self.nodes.get(node_id) if node_id else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "spec": self.spec.to_dict(),
            "repo_path": self.repo_path,
            "base_branch": self.base_branch,
            "target_branch": self.target_branch,
            "worktree_root": self.worktree_root,
            "max_parallel": self.max_parallel,
            "nodes": {nid: asdict(node) for nid, node in self.nodes.items()},
            "producer_id_to_node_id": dict(self.producer_id_to_node_id),
            "roots": list(self.roots),
            "leaves": list(self.leaves),
            "node_states": {nid: st.to_dict() for nid, st in self.node_states.items()},
            "groups": {gid: asdict(group) for gid, group in self.groups.items()},
            "group_states": {gid: st.to_dict() for gid, st in self.group_states.items()},
            "group_path_to_id": dict(self.group_path_to_id),
            "is_paused": self.is_paused,
            "state_version": self.state_version,
            "snapshot": asdict(self.snapshot) if self.snapshot else None,
            "final_commit": self.final_commit,
            "final_merge_error": self.final_merge_error,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PlanInstance:
        snapshot = raw.get("snapshot")
        return cls(
            id=raw["id"],
            spec=PlanSpec.from_dict(raw.get("spec") or {}),
            repo_path=raw["repo_path"],
            base_branch=raw["base_branch"],
            target_branch=raw["target_branch"],
            worktree_root=raw["worktree_root"],
            max_parallel=int(raw["max_parallel"]),
            nodes={nid: PlanNode(**node) for nid, node in (raw.get("nodes") or {}).items()},
            producer_id_to_node_id=dict(raw.get("producer_id_to_node_id") or {}),
            roots=list(raw.get("roots") or []),
            leaves=list(raw.get("leaves") or []),
            node_states={
                nid: NodeExecutionState.from_dict(st)
                for nid, st in (raw.get("node_states") or {}).items()
            },
            groups={gid: GroupInstance(**g) for gid, g in (raw.get("groups") or {}).items()},
            group_states={
                gid: GroupExecutionState.from_dict(st)
                for gid, st in (raw.get("group_states") or {}).items()
            },
            group_path_to_id=dict(raw.get("group_path_to_id") or {}),
            is_paused=bool(raw.get("is_paused", False)),
            state_version=int(raw.get("state_version", 0)),
            snapshot=SnapshotInfo(**snapshot) if snapshot else None,
            final_commit=raw.get("final_commit"),
            final_merge_error=raw.get("final_merge_error"),
            created_at=raw.get("created_at") or utc_now_iso(),
            started_at=raw.get("started_at"),
            ended_at=raw.get("ended_at"),
        )
