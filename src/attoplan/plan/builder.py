"""Build a validated plan graph from a :class:`PlanSpec`.

Validation collects every problem it finds and reports them together in
a single :class:`PlanValidationError`.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path

from attoplan.errors import PlanValidationError
from attoplan.plan.models import (
    GroupExecutionState,
    GroupInstance,
    GroupSpec,
    JobSpec,
    NodeExecutionState,
    NodeStatus,
    PlanInstance,
    PlanNode,
    PlanSpec,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARALLEL = 4
DEFAULT_WORKTREE_DIR = ".worktrees"

_SLUG_RE = re.compile(r"[^a-z0-9-]")


def build_plan(
    spec: PlanSpec,
    *,
    default_max_parallel: int = DEFAULT_MAX_PARALLEL,
    worktree_dir: str = DEFAULT_WORKTREE_DIR,
) -> PlanInstance:
    """Validate *spec* and return a fresh :class:`PlanInstance`.

    Raises:
        PlanValidationError: listing every distinct problem in *spec*.
    """
    errors: list[str] = []
    repo_path = str(Path(spec.repo_path).resolve())
    target_branch = spec.target_branch or spec.base_branch
    max_parallel = spec.max_parallel if spec.max_parallel is not None else default_max_parallel
    if max_parallel < 1:
        errors.append(f"maxParallel must be at least 1, got {max_parallel}")

    plan = PlanInstance(
        id=str(uuid.uuid4()),
        spec=spec,
        repo_path=repo_path,
        base_branch=spec.base_branch,
        target_branch=target_branch,
        worktree_root=spec.worktree_root or str(Path(repo_path) / worktree_dir),
        max_parallel=max_parallel,
    )

    # Pass 1: ids, groups.
    jobs = list(spec.jobs)
    for group_spec in spec.groups:
        jobs.extend(_register_group_tree(plan, group_spec, parent_path=None))

    accepted: list[tuple[PlanNode, JobSpec]] = []
    for job in jobs:
        producer_id = job.producer_id
        if not producer_id:
            errors.append("Job is missing required 'producerId' field")
            continue
        if producer_id in plan.producer_id_to_node_id:
            errors.append(f"Duplicate producerId: '{producer_id}'")
            continue
        node = PlanNode(
            id=str(uuid.uuid4()),
            producer_id=producer_id,
            name=job.name or producer_id,
            task=job.task,
            work=job.work,
            prechecks=job.prechecks,
            postchecks=job.postchecks,
            instructions=job.instructions,
            base_branch=job.base_branch,
            expects_no_changes=job.expects_no_changes,
            auto_heal=job.auto_heal,
        )
        plan.nodes[node.id] = node
        plan.producer_id_to_node_id[producer_id] = node.id
        if job.group and job.group.strip("/"):
            group = _ensure_group_path(plan, job.group)
            node.group_id = group.id
            group.node_ids.append(node.id)
            _propagate_membership(plan, group, node.id)
        accepted.append((node, job))

    # Pass 2: resolve dependencies.
    for node, job in accepted:
        for dep_producer_id in job.dependencies:
            dep_id = plan.producer_id_to_node_id.get(dep_producer_id)
            if dep_id is None:
                errors.append(
                    f"Node '{node.producer_id}' references unknown dependency '{dep_producer_id}'"
                )
                continue
            if dep_id not in node.dependencies:
                node.dependencies.append(dep_id)

    # Pass 3: reverse edges, roots/leaves, structural checks.
    for node in plan.nodes.values():
        for dep_id in node.dependencies:
            plan.nodes[dep_id].dependents.append(node.id)

    plan.roots = [nid for nid, node in plan.nodes.items() if node.is_root]
    plan.leaves = [nid for nid, node in plan.nodes.items() if node.is_leaf]

    cycle = find_cycle({nid: node.dependencies for nid, node in plan.nodes.items()})
    if cycle:
        rendered = " -> ".join(plan.nodes[nid].producer_id for nid in cycle)
        errors.append(f"Circular dependency detected: {rendered}")

    if not plan.nodes:
        errors.append("Plan must have at least one node")
    elif not plan.roots:
        errors.append("Plan has no root nodes (all nodes have dependencies) - this indicates a cycle")

    if errors:
        logger.debug("plan %r failed validation: %s", spec.name, errors)
        raise PlanValidationError(errors)

    for nid, node in plan.nodes.items():
        status = NodeStatus.READY if node.is_root else NodeStatus.PENDING
        plan.node_states[nid] = NodeExecutionState(status=status)
    for gid in plan.groups:
        plan.group_states[gid] = GroupExecutionState()

    logger.info("built plan %s (%r) with %d nodes", plan.id, spec.name, len(plan.nodes))
    return plan


def build_single_job_plan(
    name: str,
    task: str,
    *,
    repo_path: str = ".",
    work: str | None = None,
    prechecks: str | None = None,
    postchecks: str | None = None,
    instructions: str | None = None,
    base_branch: str = "main",
    target_branch: str | None = None,
    expects_no_changes: bool = False,
    worktree_root: str | None = None,
) -> PlanInstance:
    """Build a one-node plan from minimal job fields."""
    job = JobSpec(
        producer_id=slugify(name),
        task=task,
        name=name,
        work=work,
        prechecks=prechecks,
        postchecks=postchecks,
        instructions=instructions,
        expects_no_changes=expects_no_changes,
    )
    spec = PlanSpec(
        name=name,
        repo_path=repo_path,
        jobs=[job],
        base_branch=base_branch,
        target_branch=target_branch,
        max_parallel=1,
        worktree_root=worktree_root,
    )
    return build_plan(spec)


def slugify(name: str, max_length: int = 64) -> str:
    slug = _SLUG_RE.sub("-", name.lower())[:max_length]
    return slug or "job"


def find_cycle(edges: Mapping[str, Sequence[str]]) -> list[str] | None:
    """Return one cycle in *edges* as ``[a, b, ..., a]``, or None.

    Depth-first search driven by an explicit stack, so arbitrarily deep
    graphs do not hit the recursion limit.
    """
    visiting: set[str] = set()
    visited: set[str] = set()

    for start in edges:
        if start in visited:
            continue
        path: list[str] = [start]
        visiting.add(start)
        stack: list[Iterator[str]] = [iter(edges.get(start, ()))]
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                stack.pop()
                done = path.pop()
                visiting.discard(done)
                visited.add(done)
                continue
            if nxt in visiting:
                return path[path.index(nxt):] + [nxt]
            if nxt in visited:
                continue
            visiting.add(nxt)
            path.append(nxt)
            stack.append(iter(edges.get(nxt, ())))
    return None


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


def _register_group_tree(
    plan: PlanInstance, group_spec: GroupSpec, parent_path: str | None
) -> list[JobSpec]:
    """Create groups for a nested spec tree and return its jobs tagged with their path."""
    name = group_spec.name.strip("/")
    path = f"{parent_path}/{name}" if parent_path else name
    if name:
        _ensure_group_path(plan, path)
    jobs: list[JobSpec] = []
    for job in group_spec.jobs:
        if name and not job.group:
            job = JobSpec(**{**job.to_dict(), "group": path})
        jobs.append(job)
    for child in group_spec.groups:
        jobs.extend(_register_group_tree(plan, child, path if name else parent_path))
    return jobs


def _ensure_group_path(plan: PlanInstance, path: str) -> GroupInstance:
    """Return the group at *path*, creating it and any missing ancestors."""
    segments = [s for s in path.split("/") if s]
    parent: GroupInstance | None = None
    current_path = ""
    for segment in segments:
        current_path = f"{current_path}/{segment}" if current_path else segment
        gid = plan.group_path_to_id.get(current_path)
        if gid is None:
            group = GroupInstance(
                id=str(uuid.uuid4()),
                name=segment,
                path=current_path,
                parent_group_id=parent.id if parent else None,
            )
            plan.groups[group.id] = group
            plan.group_path_to_id[current_path] = group.id
            if parent:
                parent.child_group_ids.append(group.id)
            gid = group.id
        parent = plan.groups[gid]
    if parent is None:
        raise ValueError(f"empty group path {path!r}")
    return parent


def _propagate_membership(plan: PlanInstance, group: GroupInstance, node_id: str) -> None:
    current: GroupInstance | None = group
    while current is not None:
        current.all_node_ids.append(node_id)
        current.total_nodes += 1
        current = plan.groups.get(current.parent_group_id) if current.parent_group_id else None
