"""Derived plan and group status.

Nothing here is stored: every value is recomputed from node states.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass

from attoplan.plan.models import (
    TERMINAL_STATUSES,
    NodeExecutionState,
    NodeStatus,
    PlanInstance,
    PlanStatus,
)


@dataclass(slots=True)
class PlanProgress:
    total: int
    completed: int
    succeeded: int
    failed: int
    blocked: int
    canceled: int
    running: int
    pending: int

    @property
    def percent(self) -> float:
        return 100.0 * self.completed / self.total if self.total else 0.0


def status_counts(states: Iterable[NodeExecutionState]) -> dict[NodeStatus, int]:
    counts = Counter(state.status for state in states)
    return {status: counts.get(status, 0) for status in NodeStatus}


def compute_plan_status(
    states: Iterable[NodeExecutionState],
    *,
    has_started: bool,
    is_paused: bool = False,
) -> PlanStatus:
    """Aggregate node statuses into one plan status.

    * ``paused`` while paused with work left,
    * ``running`` while anything is scheduled/running, or once started
      with ready/pending work left,
    * otherwise, all terminal: ``canceled`` if anything was canceled,
      ``failed`` if anything failed or was blocked, else ``succeeded``.
    """
    counts = status_counts(states)
    total = sum(counts.values())
    non_terminal = total - sum(counts[s] for s in TERMINAL_STATUSES)

    if is_paused and non_terminal:
        return PlanStatus.PAUSED
    if counts[NodeStatus.RUNNING] or counts[NodeStatus.SCHEDULED]:
        return PlanStatus.RUNNING
    if counts[NodeStatus.READY] or counts[NodeStatus.PENDING]:
        return PlanStatus.RUNNING if has_started else PlanStatus.PENDING
    if total == 0:
        return PlanStatus.PENDING
    if counts[NodeStatus.CANCELED]:
        return PlanStatus.CANCELED
    if counts[NodeStatus.FAILED] or counts[NodeStatus.BLOCKED]:
        return PlanStatus.FAILED
    return PlanStatus.SUCCEEDED


def plan_status(plan: PlanInstance) -> PlanStatus:
    """Plan status including the final merge of the snapshot branch.

    A plan whose nodes all succeeded stays ``running`` until its snapshot
    has been merged into the target branch, and becomes ``failed`` if
    that merge was refused.
    """
    status = compute_plan_status(
        plan.node_states.values(),
        has_started=plan.started_at is not None,
        is_paused=plan.is_paused,
    )
    if status == PlanStatus.SUCCEEDED and plan.snapshot is not None and plan.final_commit is None:
        return PlanStatus.FAILED if plan.final_merge_error else PlanStatus.RUNNING
    return status


def needs_final_merge(plan: PlanInstance) -> bool:
    """True once every node succeeded and the snapshot still has to land."""
    return (
        plan.snapshot is not None
        and plan.final_commit is None
        and plan.final_merge_error is None
        and bool(plan.node_states)
        and all(st.status == NodeStatus.SUCCEEDED for st in plan.node_states.values())
    )


def compute_progress(plan: PlanInstance) -> PlanProgress:
    counts = status_counts(plan.node_states.values())
    completed = sum(counts[s] for s in TERMINAL_STATUSES)
    return PlanProgress(
        total=len(plan.node_states),
        completed=completed,
        succeeded=counts[NodeStatus.SUCCEEDED],
        failed=counts[NodeStatus.FAILED],
        blocked=counts[NodeStatus.BLOCKED],
        canceled=counts[NodeStatus.CANCELED],
        running=counts[NodeStatus.RUNNING] + counts[NodeStatus.SCHEDULED],
        pending=counts[NodeStatus.PENDING] + counts[NodeStatus.READY],
    )


def effective_ended_at(plan: PlanInstance) -> str | None:
    """Latest node end time once the plan is terminal, else None."""
    if plan.ended_at:
        return plan.ended_at
    if any(st.status not in TERMINAL_STATUSES for st in plan.node_states.values()):
        return None
    ended = [st.ended_at for st in plan.node_states.values() if st.ended_at]
    return max(ended) if ended else None
