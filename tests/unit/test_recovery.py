"""Tests for startup crash recovery."""

from __future__ import annotations

import os

from attoplan.persistence.recovery import (
    CRASHED,
    crash_message,
    pid_is_alive,
    recover_running_nodes,
)
from attoplan.plan.models import NodeStatus
from attoplan.plan.state_machine import PlanStateMachine
from tests.helpers import make_plan


def _plan_with_running(pid: int | None):
    plan = make_plan([{"producerId": "a"}, {"producerId": "b", "dependencies": ["a"]}])
    sm = PlanStateMachine(plan)
    a = plan.node_by_producer_id("a").id
    sm.transition(a, NodeStatus.SCHEDULED)
    sm.transition(a, NodeStatus.RUNNING, updates={"pid": pid})
    return sm, a, plan.node_by_producer_id("b").id


def test_dead_pid_marked_crashed() -> None:
    sm, a, b = _plan_with_running(999_999)
    crashed = recover_running_nodes(sm, is_alive=lambda pid: False)
    assert crashed == [a]
    state = sm.get_state(a)
    assert state.status == NodeStatus.FAILED
    assert state.failure_reason == CRASHED
    assert state.error == "Process crashed or was terminated unexpectedly (PID: 999999)"
    assert state.pid is None
    assert sm.get_state(b).status == NodeStatus.BLOCKED


def test_live_pid_left_running() -> None:
    sm, a, _ = _plan_with_running(123)
    assert recover_running_nodes(sm, is_alive=lambda pid: pid == 123) == []
    assert sm.get_state(a).status == NodeStatus.RUNNING


def test_missing_pid_is_crash() -> None:
    sm, a, _ = _plan_with_running(None)
    recover_running_nodes(sm, is_alive=lambda pid: True)
    assert sm.get_state(a).error == crash_message(None)
    assert "no process tracking" in sm.get_state(a).error


def test_scheduled_nodes_are_failed() -> None:
    plan = make_plan([{"producerId": "a"}])
    sm = PlanStateMachine(plan)
    a = plan.roots[0]
    sm.transition(a, NodeStatus.SCHEDULED)
    assert recover_running_nodes(sm, is_alive=lambda pid: True) == [a]
    assert sm.get_state(a).failure_reason == CRASHED


def test_pid_is_alive() -> None:
    assert pid_is_alive(os.getpid())
    assert not pid_is_alive(None)
    assert not pid_is_alive(0)
