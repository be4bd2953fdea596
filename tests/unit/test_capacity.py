"""Tests for the global capacity manager."""

from __future__ import annotations

import json
import os
import time
from pathlib import Path

import pytest

from attoplan.scheduler.capacity import GlobalCapacityManager


class TestLocalSlots:
    def test_acquire_until_full(self) -> None:
        cap = GlobalCapacityManager(2)
        assert cap.try_acquire("p1", "n1")
        assert cap.try_acquire("p1", "n2")
        assert not cap.try_acquire("p2", "n3")
        assert cap.running_count == 2
        assert cap.available_capacity() == 0

    def test_acquire_is_idempotent(self) -> None:
        cap = GlobalCapacityManager(1)
        assert cap.try_acquire("p1", "n1")
        assert cap.try_acquire("p1", "n1")
        assert cap.running_count == 1

    def test_release_and_release_plan(self) -> None:
        cap = GlobalCapacityManager(4)
        cap.try_acquire("p1", "n1")
        cap.try_acquire("p1", "n2")
        cap.try_acquire("p2", "n3")
        cap.release("n1")
        assert cap.active_plans() == ["p1", "p2"]
        cap.release_plan("p1")
        assert cap.running_count == 1
        assert cap.active_plans() == ["p2"]

    def test_invalid_max(self) -> None:
        with pytest.raises(ValueError):
            GlobalCapacityManager(0)
        with pytest.raises(ValueError):
            GlobalCapacityManager(2).set_max_parallel(0)

    def test_stats_without_registry(self) -> None:
        cap = GlobalCapacityManager(3)
        cap.try_acquire("p", "n")
        stats = cap.stats()
        assert (stats.max_parallel, stats.local_running, stats.available, stats.instances) == (3, 1, 2, 1)


class TestRegistry:
    def _write(self, path: Path, instances: list[dict], **extra) -> None:
        path.write_text(json.dumps({"version": 1, "instances": instances, **extra}), encoding="utf-8")

    def test_other_instances_reduce_budget(self, tmp_path: Path) -> None:
        registry = tmp_path / "capacity.json"
        self._write(
            registry,
            [
                {"instance_id": "other", "process_id": os.getpid(), "running_jobs": 3, "last_heartbeat": time.time()},
            ],
        )
        cap = GlobalCapacityManager(4, registry_path=registry, instance_id="me")
        assert cap.other_instances_running() == 3
        assert cap.try_acquire("p", "n1")
        assert not cap.try_acquire("p", "n2")
        assert cap.total_global_running() == 4

    def test_stale_and_dead_entries_ignored(self, tmp_path: Path) -> None:
        registry = tmp_path / "capacity.json"
        self._write(
            registry,
            [
                {"instance_id": "stale", "process_id": os.getpid(), "running_jobs": 5, "last_heartbeat": time.time() - 3600},
                {"instance_id": "dead", "process_id": 0, "running_jobs": 5, "last_heartbeat": time.time()},
            ],
        )
        cap = GlobalCapacityManager(4, registry_path=registry, instance_id="me")
        assert cap.other_instances_running() == 0
        cap.update_running_jobs(2)
        data = json.loads(registry.read_text(encoding="utf-8"))
        assert [i["instance_id"] for i in data["instances"]] == ["me"]
        assert data["instances"][0]["running_jobs"] == 2

    def test_shared_max_is_adopted(self, tmp_path: Path) -> None:
        registry = tmp_path / "capacity.json"
        first = GlobalCapacityManager(8, registry_path=registry, instance_id="a")
        second = GlobalCapacityManager(8, registry_path=registry, instance_id="b")
        first.set_max_parallel(3)
        second.update_running_jobs(0)
        assert second.max_parallel == 3

    @pytest.mark.asyncio
    async def test_shutdown_removes_own_entry(self, tmp_path: Path) -> None:
        registry = tmp_path / "capacity.json"
        cap = GlobalCapacityManager(4, registry_path=registry, instance_id="me", heartbeat_interval=0.01)
        cap.start()
        assert [i["instance_id"] for i in json.loads(registry.read_text())["instances"]] == ["me"]
        await cap.shutdown()
        assert json.loads(registry.read_text())["instances"] == []
