"""Plan runner: owns every loaded plan and drives it to completion.

The runner wires the builder, state machines, scheduler, capacity
manager, store and executor together. Dispatch is event driven: node
completions wake the execution pump, which also runs on a slow timer to
pick up anything a wake-up missed.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any, Callable

from attoplan.config.schema import AttoplanConfig
from attoplan.errors import CleanupReport, LockTimeoutError, PlanError, PlanNotFoundError
from attoplan.git.operations import GitOperations
from attoplan.persistence.recovery import LivenessOracle, mark_crashed, pid_is_alive, recover_running_nodes
from attoplan.persistence.store import PlanStore
from attoplan.plan.builder import build_plan, build_single_job_plan
from attoplan.plan.events import (
    NodeTransition,
    PlanCompleted,
    PlanCreated,
    PlanDeleted,
    PlanEvent,
    PlanEventBus,
    PlanUpdated,
)
from attoplan.plan.models import (
    TERMINAL_PLAN_STATUSES,
    TERMINAL_STATUSES,
    NodeStatus,
    PlanInstance,
    PlanSpec,
    PlanStatus,
)
from attoplan.plan.state_machine import PlanStateMachine
from attoplan.plan.status import needs_final_merge
from attoplan.runner.executor import (
    ExecutionContext,
    ExecutionResult,
    NodeExecutor,
    ShellNodeExecutor,
)
from attoplan.runner.snapshot import SnapshotManager
from attoplan.scheduler.capacity import GlobalCapacityManager
from attoplan.scheduler.pump import ExecutionPump
from attoplan.scheduler.scheduler import PlanScheduler

logger = logging.getLogger(__name__)

_ACTIVE = (NodeStatus.SCHEDULED, NodeStatus.RUNNING)


class PlanRunner:
    """Creates, runs, pauses, cancels and deletes plans."""

    def __init__(
        self,
        config: AttoplanConfig | None = None,
        *,
        store: PlanStore | None = None,
        git: GitOperations | None = None,
        executor: NodeExecutor | None = None,
        capacity: GlobalCapacityManager | None = None,
        events: PlanEventBus | None = None,
        notifier: Callable[[PlanEvent], Any] | None = None,
        is_alive: LivenessOracle = pid_is_alive,
    ) -> None:
        self.config = config or AttoplanConfig()
        storage_dir = Path(self.config.storage.dir)
        self.events = events or PlanEventBus()
        if notifier is not None:
            self.events.subscribe(notifier)
        self.store = store or PlanStore(storage_dir)
        self.git = git or GitOperations()
        self.capacity = capacity or GlobalCapacityManager(
            self.config.scheduler.global_max_parallel,
            registry_path=self.config.storage.capacity_registry,
        )
        self.scheduler = PlanScheduler(self.capacity)
        self.log_dir = storage_dir / "logs"
        self.snapshots = SnapshotManager(self.git)
        self.executor: NodeExecutor = executor or ShellNodeExecutor(
            self.git, snapshots=self.snapshots, shell=self.config.runner.shell, log_dir=self.log_dir
        )
        self.pump = ExecutionPump(
            self.pump_once, interval=self.config.scheduler.pump_interval_ms / 1000.0
        )
        self._is_alive = is_alive
        self._plans: dict[str, PlanInstance] = {}
        self._machines: dict[str, PlanStateMachine] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._finalizers: dict[str, asyncio.Task[None]] = {}
        self._persisted: set[str] = set()
        self._deleting: set[str] = set()
        self.events.subscribe(self._on_event)

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    async def initialize(self) -> list[PlanInstance]:
        """Load persisted plans and reconcile nodes whose processes died."""
        loaded = self.store.load_all()
        for plan in loaded:
            sm = self._register(plan)
            self._persisted.add(plan.id)
            if self.config.runner.auto_recover:
                crashed = recover_running_nodes(sm, self._is_alive)
                if crashed:
                    logger.warning("plan %s: %d node(s) marked crashed", plan.id, len(crashed))
            sm.promote_ready_nodes()
            self._save(plan)
        logger.info("loaded %d plan(s) from %s", len(loaded), self.store.storage_dir)
        return loaded

    def start(self) -> None:
        self.capacity.start()
        self.pump.start()
        self.pump.wake()

    async def shutdown(self, *, cancel_running: bool = True) -> None:
        """Stop dispatching and persist every plan.

        With *cancel_running* in-flight nodes are terminated and end up
        ``canceled``; otherwise they are left for crash recovery.
        """
        await self.pump.stop()
        if cancel_running:
            for plan_id, plan in list(self._plans.items()):
                for node_id, state in plan.node_states.items():
                    if state.status in _ACTIVE:
                        await self._cancel_executor(plan_id, node_id, CleanupReport())
            await self._drain_tasks()
        for plan in self._plans.values():
            self._save(plan)
        await self.capacity.shutdown()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def enqueue(self, spec: PlanSpec | dict[str, Any], *, start_paused: bool | None = None) -> PlanInstance:
        """Validate, persist and schedule a new plan.

        Raises :class:`~attoplan.errors.PlanValidationError` without
        persisting anything if *spec* is invalid.
        """
        if isinstance(spec, dict):
            spec = PlanSpec.from_dict(spec)
        plan = build_plan(
            spec,
            default_max_parallel=self.config.scheduler.default_max_parallel,
            worktree_dir=self.config.git.worktree_dir,
        )
        return await self._admit(plan, start_paused)

    async def enqueue_job(self, name: str, task: str, *, start_paused: bool | None = None, **job: Any) -> PlanInstance:
        """Create a single-node plan from minimal job fields."""
        plan = build_single_job_plan(name, task, **job)
        return await self._admit(plan, start_paused)

    async def ensure_target_branch(self, plan: PlanInstance) -> None:
        """Create the plan's target branch from its base branch if missing."""
        if await self.git.branches.exists(plan.repo_path, plan.target_branch):
            return
        await self.git.branches.create(plan.repo_path, plan.target_branch, plan.base_branch)
        logger.info("created target branch %s from %s", plan.target_branch, plan.base_branch)

    async def _admit(self, plan: PlanInstance, start_paused: bool | None) -> PlanInstance:
        await self.ensure_target_branch(plan)
        patterns = [
            p
            for p in (
                _ignore_pattern(plan.repo_path, plan.worktree_root),
                _ignore_pattern(plan.repo_path, self.store.storage_dir),
            )
            if p
        ]
        if patterns:
            await self.git.repository.ensure_ignored(plan.repo_path, patterns)
        plan.is_paused = self.config.runner.start_paused if start_paused is None else start_paused
        self._register(plan)
        self._save(plan)
        self.events.emit(PlanCreated(plan_id=plan.id, name=plan.name))
        logger.info("enqueued plan %s (%r), paused=%s", plan.id, plan.name, plan.is_paused)
        self.pump.wake()
        return plan

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, plan_id: str) -> PlanInstance | None:
        return self._plans.get(plan_id)

    def get_state_machine(self, plan_id: str) -> PlanStateMachine:
        sm = self._machines.get(plan_id)
        if sm is None:
            raise PlanNotFoundError(plan_id)
        return sm

    def list_plans(self) -> list[PlanInstance]:
        return sorted(self._plans.values(), key=lambda p: p.created_at)

    def status(self, plan_id: str) -> PlanStatus:
        return self.get_state_machine(plan_id).plan_status()

    async def wait_for_completion(self, plan_id: str, timeout: float | None = None) -> PlanStatus | None:
        """Wait until *plan_id* reaches a terminal status or is deleted.

        Returns the final status, or None if the plan was deleted.
        """
        done = asyncio.Event()

        def watch(event: PlanEvent) -> None:
            if isinstance(event, (PlanCompleted, PlanDeleted)) and event.plan_id == plan_id:
                done.set()

        unsubscribe = self.events.subscribe(watch)
        try:
            if plan_id not in self._plans:
                return None
            if self.status(plan_id) not in TERMINAL_PLAN_STATUSES:
                await asyncio.wait_for(done.wait(), timeout=timeout)
        finally:
            unsubscribe()
        await self._drain_tasks(plan_id)
        return self.status(plan_id) if plan_id in self._plans else None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def pause(self, plan_id: str) -> None:
        self._set_paused(plan_id, True)

    def resume(self, plan_id: str) -> None:
        self._set_paused(plan_id, False)
        self.pump.wake()

    def _set_paused(self, plan_id: str, paused: bool) -> None:
        plan = self._require(plan_id)
        if plan.is_paused == paused:
            return
        plan.is_paused = paused
        plan.state_version += 1
        self._save(plan)
        self.events.emit(PlanUpdated(plan_id=plan_id, status=str(self.status(plan_id))))
        logger.info("plan %s %s", plan_id, "paused" if paused else "resumed")

    async def retry_node(self, plan_id: str, node_id: str) -> bool:
        """Send a failed or canceled node back through the pipeline."""
        sm = self.get_state_machine(plan_id)
        if not sm.reset_node_to_pending(node_id):
            return False
        self._save(sm.plan)
        self.events.emit(PlanUpdated(plan_id=plan_id, status=str(sm.plan_status())))
        self.pump.wake()
        return True

    async def finalize(self, plan_id: str) -> bool:
        """Merge a finished plan's snapshot into its target branch now.

        Clears an earlier refusal first. Returns True once the target
        branch holds the plan's work.
        """
        sm = self.get_state_machine(plan_id)
        plan = sm.plan
        task = self._finalizers.get(plan_id)
        if task is None:
            if not sm.reopen_final_merge() and not needs_final_merge(plan):
                return plan.final_commit is not None
            task = self._start_final_merge(plan_id)
        await task
        return plan.final_commit is not None

    async def cancel(self, plan_id: str, *, skip_persist: bool = False) -> CleanupReport:
        """Cancel every unfinished node and release the plan's worktrees.

        Running processes are terminated before their nodes are marked
        canceled. Cleanup problems are collected in the returned report.
        """
        plan = self._require(plan_id)
        sm = self._machines[plan_id]
        report = CleanupReport()
        for node_id, state in plan.node_states.items():
            if state.status in _ACTIVE:
                await self._cancel_executor(plan_id, node_id, report)
        canceled = sm.cancel_all()
        self.capacity.release_plan(plan_id)
        await self._drain_tasks(plan_id)
        report = await self.cleanup_plan_resources(plan, report)
        if not skip_persist:
            self._save(plan)
        self.events.emit(PlanUpdated(plan_id=plan_id, status=str(sm.plan_status())))
        logger.info("plan %s canceled (%d node(s))", plan_id, len(canceled))
        return report

    async def delete(self, plan_id: str) -> CleanupReport:
        """Cancel *plan_id* and remove it with all of its resources and stored state."""
        plan = self._require(plan_id)
        self._deleting.add(plan_id)
        try:
            report = await self.cancel(plan_id, skip_persist=True)
            report = await self.snapshots.cleanup(plan, report)
        finally:
            self._forget(plan_id)
        try:
            self.store.delete(plan_id)
        except OSError as exc:
            report.add_failure(f"store:{plan_id}", str(exc))
        log_dir = self.log_dir / plan_id
        if log_dir.exists():
            try:
                shutil.rmtree(log_dir)
            except OSError as exc:
                report.add_failure(str(log_dir), str(exc))
        self.events.emit(PlanDeleted(plan_id=plan_id))
        if report.failures:
            logger.warning("plan %s deleted with cleanup failures: %s", plan_id, report.summary())
        else:
            logger.info("plan %s deleted", plan_id)
        return report

    async def cleanup_plan_resources(self, plan: PlanInstance, report: CleanupReport | None = None) -> CleanupReport:
        """Remove node worktrees. Never raises.

        The snapshot branch is kept for retried nodes to build on. Delete
        and the final merge remove it.
        """
        report = report or CleanupReport()
        paths = [st.worktree_path for st in plan.node_states.values() if st.worktree_path]
        for path in paths:
            try:
                if await self.git.worktrees.remove_safe(plan.repo_path, path):
                    report.removed.append(path)
                else:
                    report.add_failure(path, "worktree directory or registration left behind")
            except Exception as exc:
                report.add_failure(path, str(exc))
        if report.failures:
            logger.warning("cleanup of plan %s incomplete: %s", plan.id, report.summary())
        return report

    # ------------------------------------------------------------------
    # External deletion
    # ------------------------------------------------------------------

    async def check_external_deletions(self) -> list[str]:
        """Drop plans whose stored state was removed behind the runner's back."""
        removed = []
        for plan_id in list(self._plans):
            if plan_id in self._deleting:
                continue
            if plan_id in self._persisted and not self.store.exists(plan_id):
                await self.handle_external_deletion(plan_id)
                removed.append(plan_id)
        return removed

    async def handle_external_deletion(self, plan_id: str) -> None:
        """Stop and forget a plan without writing its state back."""
        plan = self._plans.get(plan_id)
        if plan is None or plan_id in self._deleting:
            return
        logger.warning("stored state of plan %s was deleted externally; removing plan", plan_id)
        self._deleting.add(plan_id)
        try:
            if self.status(plan_id) not in TERMINAL_PLAN_STATUSES:
                await self.cancel(plan_id, skip_persist=True)
            else:
                await self._drain_tasks(plan_id)
            await self.snapshots.cleanup(plan, CleanupReport())
        finally:
            self._forget(plan_id)
        self.events.emit(PlanDeleted(plan_id=plan_id))

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def pump_once(self) -> None:
        """One scheduling pass over every loaded plan."""
        await self.check_external_deletions()
        self._reap_orphans()

        local_running = sum(
            1
            for plan in self._plans.values()
            for st in plan.node_states.values()
            if st.status in _ACTIVE
        )
        self.capacity.update_running_jobs(local_running)
        global_running = self.capacity.total_global_running(local_running)

        for plan in list(self._plans.values()):
            if plan.is_paused or plan.id in self._deleting:
                continue
            sm = self._machines[plan.id]
            changed = bool(sm.promote_ready_nodes())
            for node_id in self.scheduler.select_nodes(plan, sm, global_running):
                if not self.capacity.try_acquire(plan.id, node_id):
                    break
                sm.mark_started()
                sm.transition(node_id, NodeStatus.SCHEDULED)
                global_running += 1
                changed = True
                self._dispatch(plan, node_id)
            if changed:
                self._save(plan)
            if needs_final_merge(plan) and plan.id not in self._finalizers:
                self._start_final_merge(plan.id)

    def _dispatch(self, plan: PlanInstance, node_id: str) -> None:
        task = asyncio.create_task(self._run_node(plan.id, node_id))
        self._tasks[node_id] = task

    async def _run_node(self, plan_id: str, node_id: str) -> None:
        plan = self._plans[plan_id]
        sm = self._machines[plan_id]
        node = plan.nodes[node_id]
        started = False
        if sm.get_state(node_id).status != NodeStatus.SCHEDULED:
            self.capacity.release(node_id)
            self._tasks.pop(node_id, None)
            return

        def report_process(pid: int | None, worktree_path: str | None) -> None:
            nonlocal started
            if not self._is_live(plan_id):
                return
            if not started:
                if sm.get_state(node_id).status != NodeStatus.SCHEDULED:
                    return
                sm.transition(
                    node_id,
                    NodeStatus.RUNNING,
                    updates={"pid": pid, "worktree_path": worktree_path},
                )
                started = True
                self._save(plan)
            elif pid is not None:
                sm.update(node_id, pid=pid)

        context = ExecutionContext(
            plan=plan,
            node=node,
            attempt=sm.get_state(node_id).attempts + 1,
            report_process=report_process,
            should_stop=lambda: not self._is_live(plan_id) or sm.get_state(node_id).status not in _ACTIVE,
        )
        try:
            result = await self.executor.execute(context)
        except Exception as exc:
            logger.exception("executor raised for node %s", node.producer_id)
            result = ExecutionResult(success=False, error=str(exc), failure_reason="executor_error")
        finally:
            self.capacity.release(node_id)
            self._tasks.pop(node_id, None)

        if not self._is_live(plan_id):
            return
        self._complete_node(sm, node_id, result)
        self._save(plan)
        self.pump.wake()

    def _complete_node(self, sm: PlanStateMachine, node_id: str, result: ExecutionResult) -> None:
        state = sm.get_state(node_id)
        if state.status not in _ACTIVE:
            return
        if result.failure_reason == "canceled":
            sm.transition(node_id, NodeStatus.CANCELED, reason=result.error or "Canceled")
            return
        if state.status == NodeStatus.SCHEDULED and result.success:
            sm.transition(node_id, NodeStatus.RUNNING)
        if result.success:
            sm.transition(
                node_id,
                NodeStatus.SUCCEEDED,
                updates={"completed_commit": result.completed_commit},
            )
        else:
            sm.transition(
                node_id,
                NodeStatus.FAILED,
                reason=result.error,
                updates={"error": result.error, "failure_reason": result.failure_reason},
            )

    def _reap_orphans(self) -> None:
        """Fail running nodes that no task is tracking and whose process is gone."""
        for plan in self._plans.values():
            sm = self._machines[plan.id]
            for node_id, state in list(plan.node_states.items()):
                if state.status != NodeStatus.RUNNING or node_id in self._tasks:
                    continue
                if state.pid and self._is_alive(state.pid):
                    continue
                mark_crashed(sm, node_id)
                self._save(plan)

    def _start_final_merge(self, plan_id: str) -> asyncio.Task[None]:
        task = asyncio.create_task(self._final_merge(plan_id))
        self._finalizers[plan_id] = task
        return task

    async def _final_merge(self, plan_id: str) -> None:
        plan = self._plans[plan_id]
        sm = self._machines[plan_id]
        try:
            try:
                outcome = await self.snapshots.finalize(plan)
                if outcome.success:
                    commit = outcome.commit or await self.git.repository.resolve_ref(plan.repo_path, plan.target_branch)
                    error = None
                else:
                    commit, error = None, outcome.error or "Final merge failed"
            except PlanError as exc:
                commit, error = None, str(exc)
            except Exception as exc:
                logger.exception("plan %s: final merge raised", plan_id)
                commit, error = None, str(exc)
            if not self._is_live(plan_id):
                return
            if error:
                logger.warning("plan %s: final merge into %s refused: %s", plan_id, plan.target_branch, error)
                sm.record_final_merge(None, error)
            else:
                logger.info("plan %s: %s now at %s", plan_id, plan.target_branch, commit[:12])
                sm.record_final_merge(commit)
                report = await self.snapshots.cleanup(plan, CleanupReport())
                if report.failures:
                    logger.warning("plan %s: snapshot cleanup incomplete: %s", plan_id, report.summary())
            self._save(plan)
            self.events.emit(PlanUpdated(plan_id=plan_id, status=str(sm.plan_status())))
        finally:
            self._finalizers.pop(plan_id, None)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _register(self, plan: PlanInstance) -> PlanStateMachine:
        sm = PlanStateMachine(plan, self.events)
        self._plans[plan.id] = plan
        self._machines[plan.id] = sm
        return sm

    def _forget(self, plan_id: str) -> None:
        self._plans.pop(plan_id, None)
        self._machines.pop(plan_id, None)
        self._persisted.discard(plan_id)
        self._deleting.discard(plan_id)
        self.capacity.release_plan(plan_id)

    def _require(self, plan_id: str) -> PlanInstance:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    def _is_live(self, plan_id: str) -> bool:
        return plan_id in self._plans and plan_id not in self._deleting

    def _save(self, plan: PlanInstance) -> None:
        if not self._is_live(plan.id):
            return
        try:
            self.store.save(plan)
        except (OSError, LockTimeoutError) as exc:
            logger.error("failed to persist plan %s: %s", plan.id, exc)
            return
        self._persisted.add(plan.id)

    async def _cancel_executor(self, plan_id: str, node_id: str, report: CleanupReport) -> None:
        try:
            await self.executor.cancel(plan_id, node_id)
        except Exception as exc:
            report.add_failure(f"node:{node_id}", f"terminate failed: {exc}")
            logger.warning("terminating node %s failed: %s", node_id, exc)

    async def _drain_tasks(self, plan_id: str | None = None) -> None:
        if plan_id is None:
            tasks = [*self._tasks.values(), *self._finalizers.values()]
        else:
            plan = self._plans.get(plan_id)
            ids = set(plan.nodes) if plan else set()
            tasks = [t for nid, t in self._tasks.items() if nid in ids]
            if plan_id in self._finalizers:
                tasks.append(self._finalizers[plan_id])
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _on_event(self, event: PlanEvent) -> None:
        if isinstance(event, NodeTransition) and (
            event.current in TERMINAL_STATUSES or event.current == NodeStatus.READY
        ):
            self.pump.wake()


def _ignore_pattern(repo_path: str, path: str | Path) -> str | None:
    """``info/exclude`` pattern for *path* if it lives inside the repository."""
    repo = Path(repo_path)
    root = Path(path)
    if not root.is_absolute():
        root = Path.cwd() / root
    try:
        relative = root.resolve().relative_to(repo.resolve())
    except ValueError:
        return None
    if not relative.parts:
        return None
    return f"{relative.as_posix()}/"
