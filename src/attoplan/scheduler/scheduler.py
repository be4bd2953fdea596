"""Pick which ready nodes of a plan may be dispatched now."""

from __future__ import annotations

import logging

from attoplan.plan.models import NodeStatus, PlanInstance
from attoplan.plan.state_machine import PlanStateMachine
from attoplan.scheduler.capacity import GlobalCapacityManager

logger = logging.getLogger(__name__)


class PlanScheduler:
    """Applies the pause, per-plan and global limits, in that order."""

    def __init__(self, capacity: GlobalCapacityManager) -> None:
        self.capacity = capacity

    def select_nodes(
        self,
        plan: PlanInstance,
        sm: PlanStateMachine,
        global_running: int | None = None,
    ) -> list[str]:
        """Return ready node ids to dispatch, in plan insertion order.

        *global_running* counts active nodes across every plan and
        instance; it defaults to the capacity manager's own view.
        """
        if plan.is_paused:
            return []

        counts = sm.status_counts()
        plan_active = counts[NodeStatus.RUNNING] + counts[NodeStatus.SCHEDULED]
        plan_budget = plan.max_parallel - plan_active
        if plan_budget <= 0:
            return []

        if global_running is None:
            global_running = self.capacity.total_global_running()
        global_budget = self.capacity.max_parallel - global_running
        if global_budget <= 0:
            logger.debug("global capacity exhausted (%d running)", global_running)
            return []

        ready = sm.get_ready_nodes()
        return ready[: min(plan_budget, global_budget)]
