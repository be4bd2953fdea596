"""Node state machine for a single plan.

All node status changes go through :meth:`PlanStateMachine.transition`,
which enforces the closed ``TRANSITIONS`` table, bumps versions, keeps
group aggregates current and publishes events. Dependency effects
(promotion to ready, blocking downstream) run as part of the same call.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Mapping
from typing import Any

from attoplan.errors import InvalidTransitionError
from attoplan.plan.events import NodeTransition, PlanCompleted, PlanEventBus
from attoplan.plan.models import (
    TERMINAL_PLAN_STATUSES,
    TERMINAL_STATUSES,
    TRANSITIONS,
    NodeExecutionState,
    NodeStatus,
    PlanInstance,
    PlanStatus,
    utc_now_iso,
)
from attoplan.plan.status import compute_plan_status, plan_status, status_counts

logger = logging.getLogger(__name__)

# Fields callers may set alongside a transition or via update().
UPDATABLE_FIELDS = frozenset(
    {
        "pid",
        "worktree_path",
        "base_commit",
        "completed_commit",
        "error",
        "failure_reason",
        "ended_at",
    }
)


class PlanStateMachine:
    """Owns the execution state of one :class:`PlanInstance`."""

    def __init__(self, plan: PlanInstance, events: PlanEventBus | None = None) -> None:
        self.plan = plan
        self.events = events or PlanEventBus()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_state(self, node_id: str) -> NodeExecutionState:
        try:
            return self.plan.node_states[node_id]
        except KeyError:
            raise KeyError(f"Unknown node {node_id!r} in plan {self.plan.id}") from None

    def can_transition(self, node_id: str, new_status: NodeStatus) -> bool:
        return new_status in TRANSITIONS[self.get_state(node_id).status]

    def get_ready_nodes(self) -> list[str]:
        return [nid for nid, st in self.plan.node_states.items() if st.status == NodeStatus.READY]

    def status_counts(self) -> dict[NodeStatus, int]:
        return status_counts(self.plan.node_states.values())

    def plan_status(self) -> PlanStatus:
        return plan_status(self.plan)

    def dependencies_succeeded(self, node_id: str) -> bool:
        node = self.plan.nodes[node_id]
        return all(
            self.plan.node_states[dep].status == NodeStatus.SUCCEEDED for dep in node.dependencies
        )

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def transition(
        self,
        node_id: str,
        new_status: NodeStatus,
        *,
        reason: str | None = None,
        updates: Mapping[str, Any] | None = None,
        propagate: bool = True,
    ) -> bool:
        """Move *node_id* to *new_status*.

        Returns False if the node is already in *new_status*. Raises
        :class:`InvalidTransitionError` for edges outside the table.
        With *propagate*, success promotes dependents and failure or
        cancellation blocks everything downstream.
        """
        state = self.get_state(node_id)
        previous = state.status
        if previous == new_status:
            return False
        if new_status not in TRANSITIONS[previous]:
            raise InvalidTransitionError(node_id, str(previous), str(new_status))
        if updates:
            unknown = set(updates) - UPDATABLE_FIELDS
            if unknown:
                raise ValueError(f"Cannot update node fields: {sorted(unknown)}")

        now = utc_now_iso()
        state.status = new_status
        if new_status == NodeStatus.SCHEDULED:
            state.scheduled_at = now
        elif new_status == NodeStatus.RUNNING:
            state.started_at = now
            state.attempts += 1
            if self.plan.started_at is None:
                self.plan.started_at = now
        elif new_status == NodeStatus.PENDING:
            state.scheduled_at = None
            state.started_at = None
            state.ended_at = None
            state.pid = None
            state.error = None
            state.failure_reason = None
            self.plan.ended_at = None
        if new_status in TERMINAL_STATUSES:
            state.ended_at = now
            if new_status != NodeStatus.SUCCEEDED and reason and not state.error:
                state.error = reason
        if updates:
            for key, value in updates.items():
                setattr(state, key, value)
        if new_status in (NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.CANCELED):
            state.pid = None

        self._bump(state)
        self._refresh_groups(node_id)
        logger.debug(
            "plan %s node %s: %s -> %s (v%d)",
            self.plan.id,
            self.plan.nodes[node_id].producer_id,
            previous,
            new_status,
            state.version,
        )
        self.events.emit(
            NodeTransition(
                plan_id=self.plan.id,
                node_id=node_id,
                previous=str(previous),
                current=str(new_status),
                version=state.version,
                reason=reason,
            )
        )

        if propagate:
            if new_status == NodeStatus.SUCCEEDED:
                self._promote_dependents(node_id)
            elif new_status in (NodeStatus.FAILED, NodeStatus.CANCELED):
                self._block_downstream(node_id, new_status)
        if new_status in TERMINAL_STATUSES:
            self._check_plan_complete()
        return True

    def update(self, node_id: str, **fields: Any) -> None:
        """Set non-status fields on a node, bumping its version."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update node fields: {sorted(unknown)}")
        state = self.get_state(node_id)
        for key, value in fields.items():
            setattr(state, key, value)
        self._bump(state)

    def mark_started(self) -> None:
        if self.plan.started_at is None:
            self.plan.started_at = utc_now_iso()
            self.plan.state_version += 1

    def promote_ready_nodes(self) -> list[str]:
        """Move every pending node whose dependencies all succeeded to ready."""
        promoted = []
        for nid, state in self.plan.node_states.items():
            if state.status == NodeStatus.PENDING and self.dependencies_succeeded(nid):
                self.transition(nid, NodeStatus.READY)
                promoted.append(nid)
        return promoted

    def cancel_all(self, reason: str = "Plan canceled") -> list[str]:
        """Cancel every non-terminal node. Returns the ids that changed."""
        canceled = []
        for nid, state in self.plan.node_states.items():
            if state.status not in TERMINAL_STATUSES:
                self.transition(nid, NodeStatus.CANCELED, reason=reason, propagate=False)
                canceled.append(nid)
        return canceled

    def reset_node_to_pending(self, node_id: str) -> bool:
        """Retry a failed or canceled node.

        The node goes back to pending (or straight on to ready when its
        dependencies have succeeded) and downstream nodes it blocked are
        re-evaluated. ``attempts`` is kept.
        """
        state = self.get_state(node_id)
        if state.status not in (NodeStatus.FAILED, NodeStatus.CANCELED):
            return False
        self.transition(node_id, NodeStatus.PENDING, reason="retry")
        self._settle_pending(node_id)
        self._unblock_downstream(node_id)
        return True

    def record_final_merge(self, commit: str | None, error: str | None = None) -> None:
        """Store the outcome of merging the snapshot into the target branch."""
        self.plan.final_commit = commit
        self.plan.final_merge_error = error
        self.plan.state_version += 1
        self._check_plan_complete()

    def reopen_final_merge(self) -> bool:
        """Clear a refused final merge so that it is attempted again."""
        if self.plan.final_merge_error is None:
            return False
        self.plan.final_merge_error = None
        self.plan.ended_at = None
        self.plan.state_version += 1
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _bump(self, state: NodeExecutionState) -> None:
        state.version += 1
        self.plan.state_version += 1

    def _settle_pending(self, node_id: str) -> None:
        node = self.plan.nodes[node_id]
        dep_states = [self.plan.node_states[d].status for d in node.dependencies]
        if any(s in (NodeStatus.FAILED, NodeStatus.CANCELED, NodeStatus.BLOCKED) for s in dep_states):
            self.transition(node_id, NodeStatus.BLOCKED, reason=self._blocked_reason(node_id))
        elif self.dependencies_succeeded(node_id):
            self.transition(node_id, NodeStatus.READY)

    def _blocked_reason(self, node_id: str) -> str:
        for dep in self.plan.nodes[node_id].dependencies:
            status = self.plan.node_states[dep].status
            if status in (NodeStatus.FAILED, NodeStatus.BLOCKED):
                return f"Blocked: dependency '{self.plan.nodes[dep].name}' failed"
            if status == NodeStatus.CANCELED:
                return f"Blocked: dependency '{self.plan.nodes[dep].name}' was canceled"
        return "Blocked: dependency did not succeed"

    def _promote_dependents(self, node_id: str) -> None:
        for dep_id in self.plan.nodes[node_id].dependents:
            state = self.plan.node_states[dep_id]
            if state.status == NodeStatus.PENDING and self.dependencies_succeeded(dep_id):
                self.transition(dep_id, NodeStatus.READY)

    def _block_downstream(self, node_id: str, cause: NodeStatus) -> None:
        name = self.plan.nodes[node_id].name
        verb = "was canceled" if cause == NodeStatus.CANCELED else "failed"
        reason = f"Blocked: dependency '{name}' {verb}"
        queue = deque(self.plan.nodes[node_id].dependents)
        seen: set[str] = set()
        while queue:
            dep_id = queue.popleft()
            if dep_id in seen:
                continue
            seen.add(dep_id)
            if self.can_transition(dep_id, NodeStatus.BLOCKED):
                self.transition(dep_id, NodeStatus.BLOCKED, reason=reason, propagate=False)
                queue.extend(self.plan.nodes[dep_id].dependents)

    def _unblock_downstream(self, node_id: str) -> None:
        stack = list(self.plan.nodes[node_id].dependents)
        while stack:
            dep_id = stack.pop()
            if self.plan.node_states[dep_id].status != NodeStatus.BLOCKED:
                continue
            node = self.plan.nodes[dep_id]
            if any(
                self.plan.node_states[d].status
                in (NodeStatus.FAILED, NodeStatus.CANCELED, NodeStatus.BLOCKED)
                for d in node.dependencies
            ):
                continue
            self.transition(dep_id, NodeStatus.PENDING, reason="dependency retried")
            if self.dependencies_succeeded(dep_id):
                self.transition(dep_id, NodeStatus.READY)
            stack.extend(node.dependents)

    def _refresh_groups(self, node_id: str) -> None:
        group_id = self.plan.nodes[node_id].group_id
        while group_id:
            group = self.plan.groups[group_id]
            gstate = self.plan.group_states[group_id]
            states = [self.plan.node_states[nid] for nid in group.all_node_ids]
            counts = status_counts(states)
            gstate.running = counts[NodeStatus.RUNNING] + counts[NodeStatus.SCHEDULED]
            gstate.succeeded = counts[NodeStatus.SUCCEEDED]
            gstate.failed = counts[NodeStatus.FAILED]
            gstate.blocked = counts[NodeStatus.BLOCKED]
            gstate.canceled = counts[NodeStatus.CANCELED]
            started = any(st.started_at for st in states)
            gstate.status = compute_plan_status(states, has_started=started)
            if started and gstate.started_at is None:
                gstate.started_at = min(st.started_at for st in states if st.started_at)
            if gstate.status in TERMINAL_PLAN_STATUSES:
                gstate.ended_at = gstate.ended_at or utc_now_iso()
            else:
                gstate.ended_at = None
            gstate.version += 1
            group_id = group.parent_group_id

    def _check_plan_complete(self) -> None:
        if self.plan.ended_at is not None:
            return
        status = self.plan_status()
        if status not in TERMINAL_PLAN_STATUSES:
            return
        self.plan.ended_at = utc_now_iso()
        logger.info("plan %s completed: %s", self.plan.id, status)
        self.events.emit(PlanCompleted(plan_id=self.plan.id, status=str(status)))
