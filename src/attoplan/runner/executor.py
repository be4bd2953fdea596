"""Node executors.

The runner hands each dispatched node to a :class:`NodeExecutor`. The
executor must call ``context.report_process`` once work has really
started (that is what moves the node to ``running``) and return an
:class:`ExecutionResult` when it is done.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol

from attoplan.errors import GitCommandError
from attoplan.git.operations import GitOperations
from attoplan.plan.models import PlanInstance, PlanNode
from attoplan.runner.snapshot import SnapshotManager

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SECONDS = 5.0
_TAIL_LINES = 20


@dataclass(slots=True)
class ExecutionContext:
    plan: PlanInstance
    node: PlanNode
    attempt: int
    report_process: Callable[[int | None, str | None], None]
    should_stop: Callable[[], bool] = lambda: False


@dataclass(slots=True)
class ExecutionResult:
    success: bool
    error: str | None = None
    failure_reason: str | None = None
    completed_commit: str | None = None
    conflict_files: list[str] = field(default_factory=list)


class NodeExecutor(Protocol):
    async def execute(self, context: ExecutionContext) -> ExecutionResult: ...

    async def cancel(self, plan_id: str, node_id: str) -> None: ...


def worktree_path_for(plan: PlanInstance, node: PlanNode) -> Path:
    return Path(plan.worktree_root) / f"{node.producer_id}-{node.id[:8]}"


class ShellNodeExecutor:
    """Runs a node's ``prechecks``, ``work`` and ``postchecks`` as shell commands.

    Each node gets a detached worktree (reused on retry). Changes made by
    ``work`` are committed and the commit is merged into the plan's
    snapshot branch through the checkout-free merge engine.
    """

    def __init__(
        self,
        git: GitOperations,
        *,
        snapshots: SnapshotManager | None = None,
        shell: str = "/bin/sh",
        log_dir: str | Path | None = None,
        cleanup_on_success: bool = True,
    ) -> None:
        self.git = git
        self.snapshots = snapshots or SnapshotManager(git)
        self.shell = shell
        self.log_dir = Path(log_dir) if log_dir else None
        self.cleanup_on_success = cleanup_on_success
        self._procs: dict[tuple[str, str], asyncio.subprocess.Process] = {}
        self._canceled: set[tuple[str, str]] = set()

    async def execute(self, context: ExecutionContext) -> ExecutionResult:
        key = (context.plan.id, context.node.id)
        try:
            return await self._execute(context)
        finally:
            self._canceled.discard(key)

    async def _execute(self, context: ExecutionContext) -> ExecutionResult:
        plan, node = context.plan, context.node
        if context.should_stop():
            return ExecutionResult(success=False, error="Canceled", failure_reason="canceled")
        repo = plan.repo_path
        wt_path = worktree_path_for(plan, node)
        base_ref = self.snapshots.base_ref_for(plan, node)

        try:
            created = await self.git.worktrees.create_or_reuse_detached(repo, wt_path, base_ref)
            base_commit = await self.git.repository.resolve_ref(repo, base_ref)
        except GitCommandError as exc:
            return ExecutionResult(success=False, error=str(exc), failure_reason="worktree")
        if created.reused:
            logger.info("node %s: reusing worktree %s", node.producer_id, wt_path)
        reported = False

        def on_spawn(pid: int | None) -> None:
            nonlocal reported
            context.report_process(pid, str(wt_path))
            reported = True

        for phase, command in (("prechecks", node.prechecks), ("work", node.work)):
            if not command:
                continue
            result = await self._run_phase(context, phase, command, wt_path, on_spawn)
            if result is not None:
                return result
        if not reported:
            on_spawn(None)

        try:
            await self.git.repository.stage_all(wt_path)
            changed = await self.git.repository.has_changes(wt_path)
            if changed:
                await self.git.repository.commit(wt_path, f"{node.name}\n\nattoplan node {node.producer_id}")
        except GitCommandError as exc:
            return ExecutionResult(success=False, error=str(exc), failure_reason="commit")
        head = await self.git.worktrees.get_head_commit(wt_path)
        produced = head is not None and head != base_commit

        if not produced and not node.expects_no_changes and node.work:
            return ExecutionResult(
                success=False,
                error="Work produced no changes (set expectsNoChanges if this is intended)",
                failure_reason="no_changes",
            )

        if node.postchecks:
            result = await self._run_phase(context, "postchecks", node.postchecks, wt_path, on_spawn)
            if result is not None:
                return result

        completed = head
        if produced and head:
            integration = await self._integrate(plan, node, head)
            if not integration.success:
                return integration
            completed = integration.completed_commit

        if self.cleanup_on_success:
            await self.git.worktrees.remove_safe(repo, wt_path)
        return ExecutionResult(success=True, completed_commit=completed)

    async def cancel(self, plan_id: str, node_id: str) -> None:
        key = (plan_id, node_id)
        proc = self._procs.get(key)
        if proc is None or proc.returncode is not None:
            return
        self._canceled.add(key)
        logger.info("terminating node %s (pid %s)", node_id, proc.pid)
        _signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            _signal_group(proc, signal.SIGKILL)
            await proc.wait()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_phase(
        self,
        context: ExecutionContext,
        phase: str,
        command: str,
        cwd: Path,
        on_spawn: Callable[[int | None], None],
    ) -> ExecutionResult | None:
        """Run one shell phase. Returns a failure result, or None on success."""
        key = (context.plan.id, context.node.id)
        if key in self._canceled or context.should_stop():
            return ExecutionResult(success=False, error="Canceled", failure_reason="canceled")

        env = {
            **os.environ,
            "ATTOPLAN_PLAN_ID": context.plan.id,
            "ATTOPLAN_NODE_ID": context.node.id,
            "ATTOPLAN_PRODUCER_ID": context.node.producer_id,
            "ATTOPLAN_PHASE": phase,
            "ATTOPLAN_TASK": context.node.task,
        }
        logger.info("node %s: running %s", context.node.producer_id, phase)
        try:
            proc = await asyncio.create_subprocess_exec(
                self.shell,
                "-c",
                command,
                cwd=str(cwd),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            return ExecutionResult(success=False, error=f"{phase}: {exc}", failure_reason=phase)

        self._procs[key] = proc
        on_spawn(proc.pid)
        tail: deque[str] = deque(maxlen=_TAIL_LINES)
        log_path = self._log_path(context)
        try:
            assert proc.stdout is not None
            with _open_log(log_path) as log:
                if log:
                    log.write(f"=== {phase}: {command}\n")
                async for raw in proc.stdout:
                    line = raw.decode("utf-8", errors="replace")
                    tail.append(line.rstrip("\n"))
                    if log:
                        log.write(line)
            code = await proc.wait()
        finally:
            self._procs.pop(key, None)

        if key in self._canceled or context.should_stop():
            return ExecutionResult(success=False, error="Canceled", failure_reason="canceled")
        if code != 0:
            detail = "\n".join(tail)
            return ExecutionResult(
                success=False,
                error=f"{phase} failed with exit code {code}" + (f":\n{detail}" if detail else ""),
                failure_reason=phase,
            )
        return None

    async def _integrate(self, plan: PlanInstance, node: PlanNode, commit: str) -> ExecutionResult:
        try:
            outcome = await self.snapshots.integrate_node(plan, node, commit)
        except GitCommandError as exc:
            return ExecutionResult(success=False, error=str(exc), failure_reason="merge")
        if not outcome.success:
            return ExecutionResult(
                success=False,
                error=outcome.error,
                failure_reason="merge_conflict" if outcome.conflict_files else "merge",
                conflict_files=list(outcome.conflict_files),
            )
        return ExecutionResult(success=True, completed_commit=outcome.commit)

    def _log_path(self, context: ExecutionContext) -> Path | None:
        if self.log_dir is None:
            return None
        return self.log_dir / context.plan.id / f"{context.node.id}-{context.attempt}.log"


def _open_log(path: Path | None) -> contextlib.AbstractContextManager:
    if path is None:
        return contextlib.nullcontext()
    path.parent.mkdir(parents=True, exist_ok=True)
    return path.open("a", encoding="utf-8")


def _signal_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    """Signal the whole process group started for a phase, falling back to the shell alone."""
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        return
    except OSError:
        proc.send_signal(sig)
