"""Tests for the node lifecycle state machine."""

from __future__ import annotations

import pytest

from attoplan.errors import InvalidTransitionError
from attoplan.plan.events import NodeTransition, PlanCompleted, PlanEventBus
from attoplan.plan.models import NodeStatus, PlanInstance, PlanStatus, SnapshotInfo
from attoplan.plan.state_machine import PlanStateMachine
from tests.helpers import make_plan


def _ids(plan: PlanInstance) -> dict[str, str]:
    return {node.producer_id: nid for nid, node in plan.nodes.items()}


def _run(sm: PlanStateMachine, node_id: str, outcome: NodeStatus = NodeStatus.SUCCEEDED, **kw) -> None:
    sm.transition(node_id, NodeStatus.SCHEDULED)
    sm.transition(node_id, NodeStatus.RUNNING)
    sm.transition(node_id, outcome, **kw)


@pytest.fixture
def chain() -> tuple[PlanStateMachine, dict[str, str], PlanEventBus]:
    plan = make_plan(
        [
            {"producerId": "a", "name": "Build A"},
            {"producerId": "b", "dependencies": ["a"]},
            {"producerId": "c", "dependencies": ["b"]},
        ]
    )
    bus = PlanEventBus()
    return PlanStateMachine(plan, bus), _ids(plan), bus


class TestTransitions:
    def test_happy_path_promotes_dependents(self, chain) -> None:
        sm, ids, _ = chain
        _run(sm, ids["a"])
        assert sm.get_state(ids["b"]).status == NodeStatus.READY
        assert sm.get_state(ids["c"]).status == NodeStatus.PENDING
        assert sm.get_ready_nodes() == [ids["b"]]

    def test_same_status_is_noop(self, chain) -> None:
        sm, ids, bus = chain
        before = sm.plan.state_version
        assert sm.transition(ids["a"], NodeStatus.READY) is False
        assert sm.plan.state_version == before
        assert bus.history == []

    def test_illegal_edge_raises(self, chain) -> None:
        sm, ids, _ = chain
        with pytest.raises(InvalidTransitionError):
            sm.transition(ids["a"], NodeStatus.SUCCEEDED)
        _run(sm, ids["a"])
        with pytest.raises(InvalidTransitionError):
            sm.transition(ids["a"], NodeStatus.RUNNING)
        assert not sm.can_transition(ids["a"], NodeStatus.PENDING)

    def test_running_sets_timestamps_and_attempts(self, chain) -> None:
        sm, ids, _ = chain
        sm.transition(ids["a"], NodeStatus.SCHEDULED)
        sm.transition(ids["a"], NodeStatus.RUNNING, updates={"pid": 99, "worktree_path": "/wt/a"})
        state = sm.get_state(ids["a"])
        assert state.attempts == 1
        assert state.scheduled_at and state.started_at
        assert state.pid == 99
        assert sm.plan.started_at is not None
        sm.transition(ids["a"], NodeStatus.SUCCEEDED, updates={"completed_commit": "f" * 40})
        assert state.pid is None
        assert state.ended_at is not None
        assert state.completed_commit == "f" * 40

    def test_versions_increase(self, chain) -> None:
        sm, ids, _ = chain
        state = sm.get_state(ids["a"])
        v_node, v_plan = state.version, sm.plan.state_version
        sm.transition(ids["a"], NodeStatus.SCHEDULED)
        assert state.version == v_node + 1
        assert sm.plan.state_version > v_plan
        sm.update(ids["a"], pid=7)
        assert state.version == v_node + 2

    def test_unknown_update_field_rejected(self, chain) -> None:
        sm, ids, _ = chain
        with pytest.raises(ValueError):
            sm.update(ids["a"], status="succeeded")
        with pytest.raises(ValueError):
            sm.transition(ids["a"], NodeStatus.SCHEDULED, updates={"attempts": 5})

    def test_events_emitted(self, chain) -> None:
        sm, ids, bus = chain
        sm.transition(ids["a"], NodeStatus.SCHEDULED, reason="picked")
        event = bus.history[-1]
        assert isinstance(event, NodeTransition)
        assert (event.previous, event.current, event.reason) == ("ready", "scheduled", "picked")


class TestFailurePropagation:
    def test_failure_blocks_all_downstream(self, chain) -> None:
        sm, ids, _ = chain
        _run(sm, ids["a"], NodeStatus.FAILED, reason="exit 1")
        assert sm.get_state(ids["a"]).error == "exit 1"
        for name in ("b", "c"):
            state = sm.get_state(ids[name])
            assert state.status == NodeStatus.BLOCKED
            assert state.error == "Blocked: dependency 'Build A' failed"
        assert sm.plan_status() == PlanStatus.FAILED

    def test_cancel_blocks_with_canceled_reason(self, chain) -> None:
        sm, ids, _ = chain
        sm.transition(ids["a"], NodeStatus.CANCELED)
        assert sm.get_state(ids["b"]).error == "Blocked: dependency 'Build A' was canceled"

    def test_diamond_join_blocked_once(self, diamond_plan) -> None:
        sm = PlanStateMachine(diamond_plan)
        ids = _ids(diamond_plan)
        _run(sm, ids["a"])
        _run(sm, ids["b"], NodeStatus.FAILED)
        assert sm.get_state(ids["d"]).status == NodeStatus.BLOCKED
        assert sm.get_state(ids["c"]).status == NodeStatus.READY
        _run(sm, ids["c"])
        assert sm.get_state(ids["d"]).status == NodeStatus.BLOCKED
        assert sm.plan_status() == PlanStatus.FAILED


class TestRetry:
    def test_retry_unblocks_downstream(self, chain) -> None:
        sm, ids, _ = chain
        _run(sm, ids["a"], NodeStatus.FAILED, reason="boom")
        assert sm.plan.ended_at is not None
        assert sm.reset_node_to_pending(ids["a"]) is True
        a = sm.get_state(ids["a"])
        assert a.status == NodeStatus.READY
        assert a.error is None
        assert a.attempts == 1
        assert sm.get_state(ids["b"]).status == NodeStatus.PENDING
        assert sm.get_state(ids["c"]).status == NodeStatus.PENDING
        assert sm.plan.ended_at is None
        _run(sm, ids["a"])
        assert sm.get_state(ids["a"]).attempts == 2
        assert sm.get_state(ids["b"]).status == NodeStatus.READY

    def test_retry_only_failed_or_canceled(self, chain) -> None:
        sm, ids, _ = chain
        assert sm.reset_node_to_pending(ids["a"]) is False
        _run(sm, ids["a"])
        assert sm.reset_node_to_pending(ids["a"]) is False

    def test_retry_of_node_with_failed_dependency_stays_blocked(self, diamond_plan) -> None:
        sm = PlanStateMachine(diamond_plan)
        ids = _ids(diamond_plan)
        _run(sm, ids["a"])
        _run(sm, ids["b"], NodeStatus.FAILED)
        _run(sm, ids["c"], NodeStatus.FAILED)
        sm.reset_node_to_pending(ids["b"])
        assert sm.get_state(ids["b"]).status == NodeStatus.READY
        assert sm.get_state(ids["d"]).status == NodeStatus.BLOCKED


class TestCompletion:
    def test_plan_completed_fires_once(self, chain) -> None:
        sm, ids, bus = chain
        for name in ("a", "b", "c"):
            _run(sm, ids[name])
        completed = [e for e in bus.history if isinstance(e, PlanCompleted)]
        assert len(completed) == 1
        assert completed[0].status == "succeeded"
        assert sm.plan_status() == PlanStatus.SUCCEEDED

    def test_completion_rearms_after_retry(self, chain) -> None:
        sm, ids, bus = chain
        _run(sm, ids["a"], NodeStatus.FAILED)
        sm.reset_node_to_pending(ids["a"])
        for name in ("a", "b", "c"):
            _run(sm, ids[name])
        completed = [e.status for e in bus.history if isinstance(e, PlanCompleted)]
        assert completed == ["failed", "succeeded"]

    def test_cancel_all(self, chain) -> None:
        sm, ids, bus = chain
        _run(sm, ids["a"])
        sm.transition(ids["b"], NodeStatus.SCHEDULED)
        canceled = sm.cancel_all()
        assert set(canceled) == {ids["b"], ids["c"]}
        assert sm.get_state(ids["c"]).status == NodeStatus.CANCELED
        assert sm.get_state(ids["c"]).error == "Plan canceled"
        assert sm.plan_status() == PlanStatus.CANCELED
        assert [e.status for e in bus.history if isinstance(e, PlanCompleted)] == ["canceled"]


class TestFinalMerge:
    def test_plan_waits_for_final_merge(self, chain) -> None:
        sm, ids, bus = chain
        sm.plan.snapshot = SnapshotInfo(branch="attoplan/snapshot/x")
        for name in ("a", "b", "c"):
            _run(sm, ids[name])
        assert sm.plan_status() == PlanStatus.RUNNING
        assert not [e for e in bus.history if isinstance(e, PlanCompleted)]

        sm.record_final_merge("f" * 40)
        assert sm.plan_status() == PlanStatus.SUCCEEDED
        assert sm.plan.final_commit == "f" * 40
        assert [e.status for e in bus.history if isinstance(e, PlanCompleted)] == ["succeeded"]

    def test_refused_merge_fails_until_reopened(self, chain) -> None:
        sm, ids, bus = chain
        sm.plan.snapshot = SnapshotInfo(branch="attoplan/snapshot/x")
        for name in ("a", "b", "c"):
            _run(sm, ids[name])
        version = sm.plan.state_version
        sm.record_final_merge(None, "checked out with local changes")
        assert sm.plan_status() == PlanStatus.FAILED
        assert sm.plan.ended_at is not None
        assert sm.plan.state_version > version

        assert sm.reopen_final_merge() is True
        assert sm.plan.final_merge_error is None
        assert sm.plan.ended_at is None
        assert sm.plan_status() == PlanStatus.RUNNING
        assert sm.reopen_final_merge() is False

        sm.record_final_merge("e" * 40)
        completed = [e.status for e in bus.history if isinstance(e, PlanCompleted)]
        assert completed == ["failed", "succeeded"]


def test_group_state_tracks_members() -> None:
    plan = make_plan([{"producerId": "a", "group": "g"}, {"producerId": "b", "group": "g", "dependencies": ["a"]}])
    sm = PlanStateMachine(plan)
    ids = _ids(plan)
    gid = plan.group_path_to_id["g"]
    sm.transition(ids["a"], NodeStatus.SCHEDULED)
    assert plan.group_states[gid].running == 1
    sm.transition(ids["a"], NodeStatus.RUNNING)
    assert plan.group_states[gid].status == PlanStatus.RUNNING
    sm.transition(ids["a"], NodeStatus.SUCCEEDED)
    _run(sm, ids["b"], NodeStatus.FAILED)
    gstate = plan.group_states[gid]
    assert gstate.succeeded == 1
    assert gstate.failed == 1
    assert gstate.status == PlanStatus.FAILED
    assert gstate.ended_at is not None
