"""Builders and fakes shared across attoplan tests."""

from __future__ import annotations

import asyncio
from typing import Any

from attoplan.plan.builder import build_plan
from attoplan.plan.models import PlanInstance, PlanSpec
from attoplan.runner.executor import ExecutionContext, ExecutionResult


def make_plan(jobs: list[dict[str, Any]], **fields: Any) -> PlanInstance:
    """Build a plan from camelCase job dicts."""
    raw = {"name": fields.pop("name", "test-plan"), "jobs": jobs, **fields}
    return build_plan(PlanSpec.from_dict(raw))


class FakeExecutor:
    """In-memory executor keyed by producer id.

    ``results`` maps producer ids to the result to return (default:
    success). Producer ids listed in ``hold`` block until released or
    canceled.
    """

    def __init__(
        self,
        results: dict[str, ExecutionResult] | None = None,
        *,
        hold: set[str] | None = None,
        pid: int = 4242,
    ) -> None:
        self.results = results or {}
        self.hold = hold or set()
        self.pid = pid
        self.calls: list[str] = []
        self.canceled: list[str] = []
        self.running: set[str] = set()
        self.max_concurrent = 0
        self._gates: dict[str, asyncio.Event] = {}

    def release(self, producer_id: str) -> None:
        self._gate(producer_id).set()

    def _gate(self, producer_id: str) -> asyncio.Event:
        return self._gates.setdefault(producer_id, asyncio.Event())

    async def execute(self, context: ExecutionContext) -> ExecutionResult:
        producer_id = context.node.producer_id
        self.calls.append(producer_id)
        context.report_process(self.pid, f"/tmp/wt/{producer_id}")
        self.running.add(producer_id)
        self.max_concurrent = max(self.max_concurrent, len(self.running))
        try:
            if producer_id in self.hold and not context.should_stop():
                await self._gate(producer_id).wait()
            else:
                await asyncio.sleep(0)
            if context.should_stop():
                return ExecutionResult(success=False, error="Canceled", failure_reason="canceled")
            return self.results.get(
                producer_id, ExecutionResult(success=True, completed_commit="c" * 40)
            )
        finally:
            self.running.discard(producer_id)

    async def cancel(self, plan_id: str, node_id: str) -> None:
        self.canceled.append(node_id)
        for gate in self._gates.values():
            gate.set()
