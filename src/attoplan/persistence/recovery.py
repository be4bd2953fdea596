"""Startup reconciliation of nodes whose processes did not survive."""

from __future__ import annotations

import logging
import os
from typing import Callable

from attoplan.plan.models import NodeStatus
from attoplan.plan.state_machine import PlanStateMachine

logger = logging.getLogger(__name__)

CRASHED = "crashed"

LivenessOracle = Callable[[int], bool]


def pid_is_alive(pid: int | None) -> bool:
    """True if a process with *pid* exists (checked with signal 0)."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def crash_message(pid: int | None) -> str:
    if pid:
        return f"Process crashed or was terminated unexpectedly (PID: {pid})"
    return "Process crashed or was terminated unexpectedly (no process tracking)"


def mark_crashed(sm: PlanStateMachine, node_id: str) -> None:
    state = sm.get_state(node_id)
    message = crash_message(state.pid)
    logger.warning("plan %s node %s: %s", sm.plan.id, node_id, message)
    sm.transition(
        node_id,
        NodeStatus.FAILED,
        reason=message,
        updates={"error": message, "failure_reason": CRASHED},
    )


def recover_running_nodes(
    sm: PlanStateMachine,
    is_alive: LivenessOracle = pid_is_alive,
) -> list[str]:
    """Fail every ``running`` node whose process is gone or was never recorded.

    Nodes left ``scheduled`` never got a process and are failed the same
    way. Returns the ids that were marked crashed.
    """
    crashed: list[str] = []
    for node_id, state in list(sm.plan.node_states.items()):
        if state.status == NodeStatus.RUNNING:
            if state.pid and is_alive(state.pid):
                continue
        elif state.status != NodeStatus.SCHEDULED:
            continue
        mark_crashed(sm, node_id)
        crashed.append(node_id)
    return crashed
