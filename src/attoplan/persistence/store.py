"""File-backed plan store.

Layout under the storage directory::

    plans-index.json          {"version": 1, "plans": {id: {name, created_at}}}
    .plans-index.json.lock    held while a plan record and the index change together
    <plan_id>/plan.json       {"schema_version": N, "saved_at": ..., "plan": {...}}
    plan-<plan_id>.json       legacy single-file record, upgraded on load
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any

from attoplan.errors import SchemaVersionError
from attoplan.persistence.io import read_json, write_json_atomic
from attoplan.persistence.locks import DEFAULT_LOCK_TIMEOUT, locked_state
from attoplan.persistence.migrations import SCHEMA_VERSION, migrate
from attoplan.plan.models import PlanInstance, utc_now_iso

logger = logging.getLogger(__name__)

INDEX_FILE = "plans-index.json"
PLAN_FILE = "plan.json"


class PlanStore:
    """Reads and writes :class:`PlanInstance` records."""

    def __init__(self, storage_dir: str | Path, *, lock_timeout: float | None = DEFAULT_LOCK_TIMEOUT) -> None:
        self.storage_dir = Path(storage_dir)
        self.lock_timeout = lock_timeout

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def plan_dir(self, plan_id: str) -> Path:
        return self.storage_dir / plan_id

    def plan_file(self, plan_id: str) -> Path:
        return self.plan_dir(plan_id) / PLAN_FILE

    def legacy_file(self, plan_id: str) -> Path:
        return self.storage_dir / f"plan-{plan_id}.json"

    @property
    def index_file(self) -> Path:
        return self.storage_dir / INDEX_FILE

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def save(self, plan: PlanInstance) -> None:
        record = {
            "schema_version": SCHEMA_VERSION,
            "saved_at": utc_now_iso(),
            "plan": plan.to_dict(),
        }
        with locked_state(self.index_file, timeout=self.lock_timeout):
            write_json_atomic(self.plan_file(plan.id), record)
            index = self._read_index()
            index["plans"][plan.id] = {"name": plan.name, "created_at": plan.created_at}
            write_json_atomic(self.index_file, index)

    def exists(self, plan_id: str) -> bool:
        return self.plan_file(plan_id).exists() or self.legacy_file(plan_id).exists()

    def load(self, plan_id: str) -> PlanInstance | None:
        """Load one plan, upgrading older records. Returns None if absent."""
        path = self.plan_file(plan_id)
        legacy = False
        if not path.exists():
            path = self.legacy_file(plan_id)
            legacy = True
            if not path.exists():
                return None

        raw = read_json(path, None)
        if not isinstance(raw, dict):
            logger.warning("plan record %s is unreadable", path)
            return None

        stored_version = int(raw.get("schema_version", 1))
        record = migrate(raw)
        plan = PlanInstance.from_dict(record["plan"])

        if legacy or stored_version != SCHEMA_VERSION:
            self.save(plan)
            if legacy:
                path.unlink(missing_ok=True)
            logger.info("upgraded plan %s from schema %d", plan.id, stored_version)
        return plan

    def load_all(self) -> list[PlanInstance]:
        plans: list[PlanInstance] = []
        for plan_id in self.list_ids():
            try:
                plan = self.load(plan_id)
            except (SchemaVersionError, KeyError, TypeError, ValueError) as exc:
                logger.warning("skipping plan %s: %s", plan_id, exc)
                continue
            if plan is not None:
                plans.append(plan)
        return plans

    def list_ids(self) -> list[str]:
        if not self.storage_dir.exists():
            return []
        ids: list[str] = []
        for child in sorted(self.storage_dir.iterdir()):
            if child.is_dir() and (child / PLAN_FILE).exists():
                ids.append(child.name)
            elif child.is_file() and child.name.startswith("plan-") and child.suffix == ".json":
                plan_id = child.stem[len("plan-"):]
                if plan_id not in ids:
                    ids.append(plan_id)
        return ids

    def delete(self, plan_id: str) -> bool:
        """Remove every stored file for *plan_id*. Returns True if anything was removed."""
        removed = False
        with locked_state(self.index_file, timeout=self.lock_timeout):
            plan_dir = self.plan_dir(plan_id)
            if plan_dir.exists():
                shutil.rmtree(plan_dir, ignore_errors=True)
                removed = True
            legacy = self.legacy_file(plan_id)
            if legacy.exists():
                legacy.unlink(missing_ok=True)
                removed = True
            index = self._read_index()
            if index["plans"].pop(plan_id, None) is not None:
                write_json_atomic(self.index_file, index)
        return removed

    def _read_index(self) -> dict[str, Any]:
        index = read_json(self.index_file, None)
        if not isinstance(index, dict) or not isinstance(index.get("plans"), dict):
            index = {"version": 1, "plans": {}}
        return index
