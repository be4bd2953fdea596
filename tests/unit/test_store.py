"""Tests for the file-backed plan store and record migrations."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from attoplan.errors import SchemaVersionError
from attoplan.persistence.io import read_json, write_json_atomic
from attoplan.persistence.migrations import SCHEMA_VERSION, migrate
from attoplan.persistence.store import PlanStore
from attoplan.plan.models import NodeStatus, PlanInstance, SnapshotInfo
from attoplan.plan.state_machine import PlanStateMachine
from tests.helpers import make_plan


def _legacy_record() -> dict:
    return {
        "id": "legacy-1",
        "spec": {
            "name": "old plan",
            "baseBranch": "main",
            "jobs": [{"producerId": "a", "task": "t", "work": {"type": "shell", "command": "make"}}],
        },
        "repoPath": "/repo",
        "baseBranch": "main",
        "targetBranch": "main",
        "worktreeRoot": "/repo/.worktrees",
        "maxParallel": 3,
        "nodes": [
            {"id": "n1", "producerId": "a", "name": "A", "task": "t", "dependencies": [], "dependents": []}
        ],
        "producerIdToNodeId": {"a": "n1"},
        "roots": ["n1"],
        "leaves": ["n1"],
        "nodeStates": {
            "n1": {
                "status": "running",
                "version": 3,
                "attempts": 1,
                "startedAt": 1700000000000,
                "pid": 4321,
                "worktreePath": "/repo/.worktrees/a",
            }
        },
        "groups": {},
        "groupStates": {},
        "groupPathToId": {},
        "isPaused": True,
        "stateVersion": 7,
        "createdAt": 1699999999000,
    }


class TestIO:
    def test_write_and_read(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "data.json"
        write_json_atomic(path, {"a": 1})
        assert read_json(path, None) == {"a": 1}
        assert [p.name for p in path.parent.iterdir()] == ["data.json"]

    def test_read_missing_or_corrupt(self, tmp_path: Path) -> None:
        assert read_json(tmp_path / "missing.json", {"d": 1}) == {"d": 1}
        bad = tmp_path / "bad.json"
        bad.write_text("{not json", encoding="utf-8")
        assert read_json(bad, []) == []


class TestMigrations:
    def test_current_record_untouched(self) -> None:
        record = {"schema_version": SCHEMA_VERSION, "plan": {"id": "x"}}
        assert migrate(record) is record

    def test_newer_record_rejected(self) -> None:
        with pytest.raises(SchemaVersionError):
            migrate({"schema_version": SCHEMA_VERSION + 1})

    def test_legacy_record_upgraded(self) -> None:
        record = migrate(_legacy_record())
        assert record["schema_version"] == SCHEMA_VERSION
        plan = PlanInstance.from_dict(record["plan"])
        assert plan.id == "legacy-1"
        assert plan.max_parallel == 3
        assert plan.is_paused is True
        assert plan.state_version == 7
        node = plan.nodes["n1"]
        assert node.producer_id == "a"
        assert plan.spec.jobs[0].work == "make"
        state = plan.node_states["n1"]
        assert state.status == NodeStatus.RUNNING
        assert state.pid == 4321
        assert state.started_at.startswith("2023-11-14T22:13:20")
        assert plan.created_at.startswith("2023-11-14T22:13:19")


class TestPlanStore:
    def test_save_load_round_trip(self, tmp_path: Path) -> None:
        store = PlanStore(tmp_path)
        plan = make_plan([{"producerId": "a"}, {"producerId": "b", "dependencies": ["a"], "group": "g"}])
        sm = PlanStateMachine(plan)
        node_a = plan.node_by_producer_id("a").id
        sm.transition(node_a, NodeStatus.SCHEDULED)
        sm.transition(node_a, NodeStatus.RUNNING, updates={"pid": 55})
        plan.snapshot = SnapshotInfo(branch=f"attoplan/snapshot/{plan.id}", base_commit="b" * 40)
        plan.final_merge_error = "refused"
        store.save(plan)

        assert store.exists(plan.id)
        assert store.list_ids() == [plan.id]
        loaded = store.load(plan.id)
        assert loaded is not None
        assert loaded.to_dict() == plan.to_dict()
        assert loaded.node_states[node_a].status == NodeStatus.RUNNING
        assert loaded.snapshot.branch == f"attoplan/snapshot/{plan.id}"
        assert loaded.final_merge_error == "refused"
        assert loaded.final_commit is None
        raw = json.loads(store.plan_file(plan.id).read_text(encoding="utf-8"))
        assert raw["schema_version"] == SCHEMA_VERSION
        index = json.loads(store.index_file.read_text(encoding="utf-8"))
        assert index["plans"][plan.id]["name"] == "test-plan"

    def test_load_missing(self, tmp_path: Path) -> None:
        assert PlanStore(tmp_path).load("nope") is None
        assert PlanStore(tmp_path / "absent").list_ids() == []

    def test_legacy_file_is_upgraded_in_place(self, tmp_path: Path) -> None:
        store = PlanStore(tmp_path)
        write_json_atomic(store.legacy_file("legacy-1"), _legacy_record())
        assert store.list_ids() == ["legacy-1"]
        plan = store.load("legacy-1")
        assert plan is not None
        assert not store.legacy_file("legacy-1").exists()
        assert store.plan_file("legacy-1").exists()
        assert store.list_ids() == ["legacy-1"]

    def test_load_all_skips_bad_records(self, tmp_path: Path) -> None:
        store = PlanStore(tmp_path)
        good = make_plan([{"producerId": "a"}])
        store.save(good)
        future = tmp_path / "future" / "plan.json"
        write_json_atomic(future, {"schema_version": 99, "plan": {}})
        corrupt = tmp_path / "corrupt" / "plan.json"
        corrupt.parent.mkdir()
        corrupt.write_text("{", encoding="utf-8")
        assert [p.id for p in store.load_all()] == [good.id]

    def test_delete(self, tmp_path: Path) -> None:
        store = PlanStore(tmp_path)
        plan = make_plan([{"producerId": "a"}])
        store.save(plan)
        assert store.delete(plan.id) is True
        assert not store.exists(plan.id)
        assert store.list_ids() == []
        assert plan.id not in json.loads(store.index_file.read_text(encoding="utf-8"))["plans"]
        assert store.delete(plan.id) is False
