"""Versioned persisted-record format.

Every record carries ``schema_version``. Loading runs the record through
the registered migration for each version between what was stored and
:data:`SCHEMA_VERSION`.

Version history:

1. Single ``plan-<id>.json`` file per plan with camelCase keys, a node
   list and epoch-millisecond timestamps. Has no ``schema_version`` field.
2. Directory per plan (``<id>/plan.json``) holding
   ``{"schema_version": 2, "plan": PlanInstance.to_dict()}``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Callable

from attoplan.errors import SchemaVersionError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

Migration = Callable[[dict[str, Any]], dict[str, Any]]
MIGRATIONS: dict[int, Migration] = {}


def migration(from_version: int) -> Callable[[Migration], Migration]:
    """Register a function lifting records from *from_version* to the next one."""

    def register(fn: Migration) -> Migration:
        MIGRATIONS[from_version] = fn
        return fn

    return register


def record_version(record: dict[str, Any]) -> int:
    return int(record.get("schema_version", 1))


def migrate(record: dict[str, Any]) -> dict[str, Any]:
    """Bring *record* up to :data:`SCHEMA_VERSION`."""
    version = record_version(record)
    if version > SCHEMA_VERSION:
        raise SchemaVersionError(version, SCHEMA_VERSION)
    while version < SCHEMA_VERSION:
        step = MIGRATIONS.get(version)
        if step is None:
            raise SchemaVersionError(version, SCHEMA_VERSION)
        record = step(record)
        version += 1
        record["schema_version"] = version
        logger.debug("migrated record to schema %d", version)
    return record


# ---------------------------------------------------------------------------
# 1 -> 2
# ---------------------------------------------------------------------------


def _iso(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return datetime.fromtimestamp(float(value) / 1000.0, UTC).isoformat()


def _command(value: Any) -> str | None:
    """Legacy work specs were either a string or an object with a command."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, dict):
        command = value.get("command") or value.get("shell")
        return str(command) if command else None
    return None


def _legacy_job(raw: dict[str, Any]) -> dict[str, Any]:
    return {
        "producer_id": raw.get("producerId", ""),
        "task": raw.get("task", ""),
        "name": raw.get("name"),
        "work": _command(raw.get("work")),
        "prechecks": _command(raw.get("prechecks")),
        "postchecks": _command(raw.get("postchecks")),
        "instructions": raw.get("instructions"),
        "base_branch": raw.get("baseBranch"),
        "dependencies": list(raw.get("dependencies") or []),
        "group": raw.get("group"),
        "expects_no_changes": bool(raw.get("expectsNoChanges", False)),
        "auto_heal": bool(raw.get("autoHeal", False)),
    }


def _legacy_node(raw: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": raw["id"],
        "producer_id": raw.get("producerId", raw["id"]),
        "name": raw.get("name") or raw.get("producerId", raw["id"]),
        "task": raw.get("task", ""),
        "work": _command(raw.get("work")),
        "prechecks": _command(raw.get("prechecks")),
        "postchecks": _command(raw.get("postchecks")),
        "instructions": raw.get("instructions"),
        "base_branch": raw.get("baseBranch"),
        "expects_no_changes": bool(raw.get("expectsNoChanges", False)),
        "auto_heal": bool(raw.get("autoHeal", False)),
        "dependencies": list(raw.get("dependencies") or []),
        "dependents": list(raw.get("dependents") or []),
        "group_id": raw.get("groupId"),
    }


def _legacy_state(raw: dict[str, Any]) -> dict[str, Any]:
    return {
        "status": raw.get("status", "pending"),
        "version": int(raw.get("version", 0)),
        "attempts": int(raw.get("attempts", 0)),
        "scheduled_at": _iso(raw.get("scheduledAt")),
        "started_at": _iso(raw.get("startedAt")),
        "ended_at": _iso(raw.get("endedAt")),
        "pid": raw.get("pid"),
        "worktree_path": raw.get("worktreePath"),
        "base_commit": raw.get("baseCommit"),
        "completed_commit": raw.get("completedCommit"),
        "error": raw.get("error"),
        "failure_reason": raw.get("failureReason"),
    }


def _legacy_group(raw: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": raw["id"],
        "name": raw.get("name", ""),
        "path": raw.get("path", raw.get("name", "")),
        "parent_group_id": raw.get("parentGroupId"),
        "child_group_ids": list(raw.get("childGroupIds") or []),
        "node_ids": list(raw.get("nodeIds") or []),
        "all_node_ids": list(raw.get("allNodeIds") or []),
        "total_nodes": int(raw.get("totalNodes", 0)),
    }


def _legacy_group_state(raw: dict[str, Any]) -> dict[str, Any]:
    status = raw.get("status", "pending")
    if status == "partial":
        status = "failed"
    return {
        "status": status,
        "version": int(raw.get("version", 0)),
        "running": int(raw.get("runningCount", raw.get("running", 0))),
        "succeeded": int(raw.get("succeededCount", raw.get("succeeded", 0))),
        "failed": int(raw.get("failedCount", raw.get("failed", 0))),
        "blocked": int(raw.get("blockedCount", raw.get("blocked", 0))),
        "canceled": int(raw.get("canceledCount", raw.get("canceled", 0))),
        "started_at": _iso(raw.get("startedAt")),
        "ended_at": _iso(raw.get("endedAt")),
    }


@migration(1)
def _single_file_to_plan_record(record: dict[str, Any]) -> dict[str, Any]:
    spec = record.get("spec") or {}
    base_branch = record.get("baseBranch") or spec.get("baseBranch") or "main"
    snapshot = record.get("snapshot")
    plan = {
        "id": record["id"],
        "spec": {
            "name": spec.get("name", "plan"),
            "repo_path": spec.get("repoPath", record.get("repoPath", ".")),
            "jobs": [_legacy_job(j) for j in spec.get("jobs") or []],
            "groups": [],
            "base_branch": spec.get("baseBranch", base_branch),
            "target_branch": spec.get("targetBranch"),
            "max_parallel": spec.get("maxParallel"),
            "worktree_root": spec.get("worktreeRoot"),
        },
        "repo_path": record["repoPath"],
        "base_branch": base_branch,
        "target_branch": record.get("targetBranch") or base_branch,
        "worktree_root": record["worktreeRoot"],
        "max_parallel": int(record.get("maxParallel") or 4),
        "nodes": {n["id"]: _legacy_node(n) for n in record.get("nodes") or []},
        "producer_id_to_node_id": dict(record.get("producerIdToNodeId") or {}),
        "roots": list(record.get("roots") or []),
        "leaves": list(record.get("leaves") or []),
        "node_states": {
            nid: _legacy_state(st) for nid, st in (record.get("nodeStates") or {}).items()
        },
        "groups": {gid: _legacy_group(g) for gid, g in (record.get("groups") or {}).items()},
        "group_states": {
            gid: _legacy_group_state(st) for gid, st in (record.get("groupStates") or {}).items()
        },
        "group_path_to_id": dict(record.get("groupPathToId") or {}),
        "is_paused": bool(record.get("isPaused", False)),
        "state_version": int(record.get("stateVersion") or 0),
        "snapshot": {
            "branch": snapshot.get("branch", ""),
            "worktree_path": snapshot.get("worktreePath") or None,
            "base_commit": snapshot.get("baseCommit"),
        }
        if isinstance(snapshot, dict)
        else None,
        "created_at": _iso(record.get("createdAt")),
        "started_at": _iso(record.get("startedAt")),
        "ended_at": _iso(record.get("endedAt")),
    }
    return {"plan": plan}
