"""Process-wide cap on concurrently running nodes.

Within one process, :class:`GlobalCapacityManager` counts claimed slots
across every loaded plan. Given a registry file, several processes on
the same host also share one ceiling: each instance heartbeats its
running count into the file and subtracts the others' counts from its
own budget. Entries that stop heartbeating, or whose pid is gone, are
ignored and pruned.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from attoplan.errors import LockTimeoutError
from attoplan.persistence.io import read_json, write_json_atomic
from attoplan.persistence.locks import locked_state
from attoplan.persistence.recovery import pid_is_alive

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARALLEL = 16
HEARTBEAT_INTERVAL = 5.0
STALE_AFTER = 30.0


@dataclass(slots=True)
class InstanceEntry:
    instance_id: str
    process_id: int
    running_jobs: int = 0
    last_heartbeat: float = field(default_factory=time.time)
    active_plans: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CapacityStats:
    max_parallel: int
    local_running: int
    global_running: int
    available: int
    instances: int


class GlobalCapacityManager:
    """Tracks running-node slots against a global ceiling."""

    def __init__(
        self,
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        *,
        registry_path: str | Path | None = None,
        instance_id: str | None = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        stale_after: float = STALE_AFTER,
    ) -> None:
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.max_parallel = max_parallel
        self.instance_id = instance_id or uuid.uuid4().hex
        self._registry_path = Path(registry_path) if registry_path else None
        self._heartbeat_interval = heartbeat_interval
        self._stale_after = stale_after
        self._slots: dict[str, str] = {}  # node_id -> plan_id
        self._heartbeat_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Local slots
    # ------------------------------------------------------------------

    @property
    def running_count(self) -> int:
        return len(self._slots)

    def try_acquire(self, plan_id: str, node_id: str) -> bool:
        """Claim a slot for *node_id*. Idempotent for an already-held slot."""
        if node_id in self._slots:
            return True
        if self.available_capacity() <= 0:
            return False
        self._slots[node_id] = plan_id
        return True

    def release(self, node_id: str) -> None:
        self._slots.pop(node_id, None)

    def release_plan(self, plan_id: str) -> None:
        for node_id in [n for n, p in self._slots.items() if p == plan_id]:
            del self._slots[node_id]

    def active_plans(self) -> list[str]:
        return sorted(set(self._slots.values()))

    # ------------------------------------------------------------------
    # Global view
    # ------------------------------------------------------------------

    def other_instances_running(self) -> int:
        return sum(e.running_jobs for e in self._live_entries() if e.instance_id != self.instance_id)

    def total_global_running(self, local_running: int | None = None) -> int:
        local = self.running_count if local_running is None else local_running
        return local + self.other_instances_running()

    def available_capacity(self, local_running: int | None = None) -> int:
        return max(0, self.max_parallel - self.total_global_running(local_running))

    def set_max_parallel(self, value: int) -> None:
        if value < 1:
            raise ValueError("max_parallel must be at least 1")
        self.max_parallel = value
        if self._registry_path:
            with locked_state(self._registry_path):
                registry = self._read_registry()
                registry["global_max_parallel"] = value
                write_json_atomic(self._registry_path, registry)
        logger.info("global max parallel set to %d", value)

    def update_running_jobs(self, count: int | None = None, active_plans: list[str] | None = None) -> None:
        """Publish this instance's running count to the registry."""
        if not self._registry_path:
            return
        entry = InstanceEntry(
            instance_id=self.instance_id,
            process_id=os.getpid(),
            running_jobs=self.running_count if count is None else count,
            active_plans=self.active_plans() if active_plans is None else active_plans,
        )
        with locked_state(self._registry_path):
            registry = self._read_registry()
            now = time.time()
            instances = [
                i
                for i in registry["instances"]
                if i.get("instance_id") != self.instance_id and self._is_live(i, now)
            ]
            instances.append(_entry_to_dict(entry))
            registry["instances"] = instances
            shared_max = registry.get("global_max_parallel")
            if isinstance(shared_max, int) and shared_max >= 1:
                self.max_parallel = shared_max
            write_json_atomic(self._registry_path, registry)

    def stats(self) -> CapacityStats:
        others = self._live_entries()
        return CapacityStats(
            max_parallel=self.max_parallel,
            local_running=self.running_count,
            global_running=self.total_global_running(),
            available=self.available_capacity(),
            instances=1 + sum(1 for e in others if e.instance_id != self.instance_id),
        )

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._registry_path and self._heartbeat_task is None:
            self.update_running_jobs()
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def shutdown(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        if self._registry_path and self._registry_path.exists():
            with locked_state(self._registry_path):
                registry = self._read_registry()
                registry["instances"] = [
                    i for i in registry["instances"] if i.get("instance_id") != self.instance_id
                ]
                write_json_atomic(self._registry_path, registry)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                self.update_running_jobs()
            except (OSError, LockTimeoutError) as exc:
                logger.warning("capacity heartbeat failed: %s", exc)

    # ------------------------------------------------------------------
    # Registry file
    # ------------------------------------------------------------------

    def _read_registry(self) -> dict[str, Any]:
        registry = read_json(self._registry_path, None) if self._registry_path else None
        if not isinstance(registry, dict) or not isinstance(registry.get("instances"), list):
            registry = {"version": 1, "instances": [], "global_max_parallel": self.max_parallel}
        return registry

    def _is_live(self, raw: dict[str, Any], now: float) -> bool:
        if now - float(raw.get("last_heartbeat", 0)) > self._stale_after:
            return False
        return pid_is_alive(int(raw.get("process_id", 0)))

    def _live_entries(self) -> list[InstanceEntry]:
        if not self._registry_path:
            return []
        registry = self._read_registry()
        now = time.time()
        return [
            InstanceEntry(
                instance_id=str(i.get("instance_id", "")),
                process_id=int(i.get("process_id", 0)),
                running_jobs=int(i.get("running_jobs", 0)),
                last_heartbeat=float(i.get("last_heartbeat", 0)),
                active_plans=list(i.get("active_plans") or []),
            )
            for i in registry["instances"]
            if isinstance(i, dict) and self._is_live(i, now)
        ]


def _entry_to_dict(entry: InstanceEntry) -> dict[str, Any]:
    return {
        "instance_id": entry.instance_id,
        "process_id": entry.process_id,
        "running_jobs": entry.running_jobs,
        "last_heartbeat": entry.last_heartbeat,
        "active_plans": entry.active_plans,
    }
