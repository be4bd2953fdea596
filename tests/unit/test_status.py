"""Tests for plan status aggregation."""

from __future__ import annotations

import pytest

from attoplan.plan.models import NodeExecutionState, NodeStatus, PlanStatus, SnapshotInfo
from attoplan.plan.status import (
    compute_plan_status,
    compute_progress,
    effective_ended_at,
    needs_final_merge,
    plan_status,
)
from tests.helpers import make_plan


def _states(*statuses: NodeStatus) -> list[NodeExecutionState]:
    return [NodeExecutionState(status=s) for s in statuses]


S = NodeStatus


@pytest.mark.parametrize(
    ("statuses", "started", "paused", "expected"),
    [
        ((), False, False, PlanStatus.PENDING),
        ((S.READY, S.PENDING), False, False, PlanStatus.PENDING),
        ((S.SUCCEEDED, S.READY), True, False, PlanStatus.RUNNING),
        ((S.RUNNING, S.FAILED), True, False, PlanStatus.RUNNING),
        ((S.SCHEDULED,), True, False, PlanStatus.RUNNING),
        ((S.RUNNING, S.PENDING), True, True, PlanStatus.PAUSED),
        ((S.SUCCEEDED, S.SUCCEEDED), True, True, PlanStatus.SUCCEEDED),
        ((S.SUCCEEDED, S.FAILED), True, False, PlanStatus.FAILED),
        ((S.SUCCEEDED, S.BLOCKED), True, False, PlanStatus.FAILED),
        ((S.FAILED, S.CANCELED), True, False, PlanStatus.CANCELED),
    ],
)
def test_compute_plan_status(statuses, started, paused, expected) -> None:
    assert compute_plan_status(_states(*statuses), has_started=started, is_paused=paused) == expected


def test_progress_and_ended_at() -> None:
    plan = make_plan([{"producerId": "a"}, {"producerId": "b"}, {"producerId": "c"}])
    a, b, c = plan.node_states.values()
    a.status, a.ended_at = S.SUCCEEDED, "2026-01-01T00:00:01+00:00"
    b.status = S.RUNNING
    progress = compute_progress(plan)
    assert (progress.total, progress.completed, progress.running, progress.pending) == (3, 1, 1, 1)
    assert progress.percent == pytest.approx(100 / 3)
    assert effective_ended_at(plan) is None

    b.status, b.ended_at = S.FAILED, "2026-01-01T00:00:05+00:00"
    c.status, c.ended_at = S.SUCCEEDED, "2026-01-01T00:00:03+00:00"
    assert effective_ended_at(plan) == "2026-01-01T00:00:05+00:00"
    assert plan_status(plan) == PlanStatus.FAILED


def test_snapshot_keeps_plan_running_until_merged() -> None:
    plan = make_plan([{"producerId": "a"}, {"producerId": "b"}])
    plan.started_at = "2026-01-01T00:00:00+00:00"
    for state in plan.node_states.values():
        state.status = S.SUCCEEDED
    assert plan_status(plan) == PlanStatus.SUCCEEDED
    assert not needs_final_merge(plan)

    plan.snapshot = SnapshotInfo(branch="attoplan/snapshot/p")
    assert plan_status(plan) == PlanStatus.RUNNING
    assert needs_final_merge(plan)

    plan.final_merge_error = "refused"
    assert plan_status(plan) == PlanStatus.FAILED
    assert not needs_final_merge(plan)

    plan.final_merge_error = None
    plan.final_commit = "f" * 40
    assert plan_status(plan) == PlanStatus.SUCCEEDED
    assert not needs_final_merge(plan)


def test_final_merge_waits_for_every_node() -> None:
    plan = make_plan([{"producerId": "a"}, {"producerId": "b"}])
    plan.snapshot = SnapshotInfo(branch="attoplan/snapshot/p")
    first = next(iter(plan.node_states.values()))
    first.status = S.SUCCEEDED
    assert not needs_final_merge(plan)
