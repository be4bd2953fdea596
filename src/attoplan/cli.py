"""CLI entrypoint for attoplan."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import click
import yaml

from attoplan.config.loader import load_config
from attoplan.config.schema import AttoplanConfig
from attoplan.errors import ConfigurationError, PlanError, PlanValidationError
from attoplan.git.executor import configure_git
from attoplan.logger import get_logger, setup_logging
from attoplan.persistence.store import PlanStore
from attoplan.plan.builder import build_plan
from attoplan.plan.models import PlanInstance, PlanSpec, PlanStatus
from attoplan.plan.status import compute_progress, plan_status
from attoplan.runner.runner import PlanRunner

log = get_logger("attoplan.cli")


def _load_spec(path: Path) -> PlanSpec:
    """Read a plan spec from a JSON or YAML file."""
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise click.ClickException(f"Cannot parse {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise click.ClickException(f"{path} must contain a mapping at the top level")
    return PlanSpec.from_dict(raw)


def _prepare(ctx: click.Context) -> AttoplanConfig:
    config: AttoplanConfig = ctx.obj["config"]
    setup_logging(
        debug=ctx.obj["debug"] or config.logging.debug,
        json_output=config.logging.json,
    )
    configure_git(binary=config.git.binary, timeout=config.git.timeout_seconds)
    return config


def _find_plan(store: PlanStore, plan_id: str) -> PlanInstance:
    plan = store.load(plan_id)
    if plan is None:
        matches = [pid for pid in store.list_ids() if pid.startswith(plan_id)]
        if len(matches) == 1:
            plan = store.load(matches[0])
    if plan is None:
        raise click.ClickException(f"Plan not found: {plan_id}")
    return plan


def _plan_row(plan: PlanInstance) -> dict[str, Any]:
    progress = compute_progress(plan)
    return {
        "id": plan.id,
        "name": plan.name,
        "status": str(plan_status(plan)),
        "paused": plan.is_paused,
        "progress": f"{progress.completed}/{progress.total}",
        "created_at": plan.created_at,
    }


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to attoplan.yaml",
)
@click.option("--debug", "debug_flag", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, debug_flag: bool) -> None:
    """Attoplan DAG orchestrator for jobs in git worktrees."""
    try:
        config = load_config(config_path)
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    ctx.obj = {"config": config, "debug": debug_flag}


@main.command("validate")
@click.argument("spec_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def validate_command(ctx: click.Context, spec_path: Path) -> None:
    """Check a plan spec without running it."""
    config = _prepare(ctx)
    spec = _load_spec(spec_path)
    try:
        plan = build_plan(
            spec,
            default_max_parallel=config.scheduler.default_max_parallel,
            worktree_dir=config.git.worktree_dir,
        )
    except PlanValidationError as exc:
        for error in exc.errors:
            click.echo(f"error: {error}", err=True)
        raise click.ClickException(f"{len(exc.errors)} validation error(s) in {spec_path}") from exc
    click.echo(
        f"OK: {plan.name} ({len(plan.nodes)} nodes, {len(plan.roots)} roots, "
        f"{len(plan.leaves)} leaves, {len(plan.groups)} groups)"
    )


@main.command("run")
@click.argument("spec_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--paused", is_flag=True, help="Persist the plan paused instead of starting it")
@click.option("--timeout", type=float, default=None, help="Give up waiting after this many seconds")
@click.pass_context
def run_command(ctx: click.Context, spec_path: Path, paused: bool, timeout: float | None) -> None:
    """Run a plan spec to completion."""
    config = _prepare(ctx)
    spec = _load_spec(spec_path)
    status = asyncio.run(_run_plan(config, spec, paused=paused, timeout=timeout))
    if status != PlanStatus.SUCCEEDED:
        raise SystemExit(1)


async def _run_plan(
    config: AttoplanConfig,
    spec: PlanSpec,
    *,
    paused: bool,
    timeout: float | None,
) -> PlanStatus | None:
    runner = PlanRunner(config)
    await runner.initialize()
    try:
        plan = await runner.enqueue(spec, start_paused=paused)
    except PlanValidationError as exc:
        raise click.ClickException(str(exc)) from exc
    except PlanError as exc:
        raise click.ClickException(f"Cannot create plan: {exc}") from exc
    click.echo(f"Plan {plan.id} ({plan.name}) created with {len(plan.nodes)} node(s)")
    if paused:
        await runner.shutdown(cancel_running=False)
        return PlanStatus.PAUSED

    runner.start()
    status: PlanStatus | None = None
    try:
        status = await runner.wait_for_completion(plan.id, timeout=timeout)
    except asyncio.TimeoutError:
        log.warning("plan_timeout", plan_id=plan.id, timeout=timeout)
        click.echo(f"Timed out after {timeout}s; canceling plan {plan.id}", err=True)
        await runner.cancel(plan.id)
        status = runner.status(plan.id)
    finally:
        await runner.shutdown()

    for node_id in plan.nodes:
        node = plan.nodes[node_id]
        state = plan.node_states[node_id]
        line = f"  {node.producer_id:<24} {state.status}"
        if state.error:
            line += f"  {state.error.splitlines()[0]}"
        click.echo(line)
    if plan.final_merge_error:
        click.echo(f"  final merge: {plan.final_merge_error}")
    click.echo(f"Plan {plan.id}: {status}")
    return status


@main.command("list")
@click.option("--json", "as_json", is_flag=True, help="Emit JSON")
@click.pass_context
def list_command(ctx: click.Context, as_json: bool) -> None:
    """List stored plans."""
    config = _prepare(ctx)
    rows = [_plan_row(p) for p in PlanStore(config.storage.dir).load_all()]
    rows.sort(key=lambda r: r["created_at"])
    if as_json:
        click.echo(json.dumps(rows, indent=2))
        return
    if not rows:
        click.echo("No plans")
        return
    for row in rows:
        paused = " (paused)" if row["paused"] else ""
        click.echo(f"{row['id'][:8]}  {row['status']:<10} {row['progress']:>7}  {row['name']}{paused}")


@main.command("show")
@click.argument("plan_id")
@click.option("--json", "as_json", is_flag=True, help="Emit the stored plan record")
@click.pass_context
def show_command(ctx: click.Context, plan_id: str, as_json: bool) -> None:
    """Show one plan and the state of each node."""
    config = _prepare(ctx)
    plan = _find_plan(PlanStore(config.storage.dir), plan_id)
    if as_json:
        click.echo(json.dumps(plan.to_dict(), indent=2))
        return
    row = _plan_row(plan)
    click.echo(f"{plan.id}  {plan.name}")
    click.echo(f"status={row['status']} progress={row['progress']} target={plan.target_branch}")
    if plan.final_merge_error:
        click.echo(f"final merge: {plan.final_merge_error}")
    for node_id in plan.nodes:
        node = plan.nodes[node_id]
        state = plan.node_states[node_id]
        deps = ",".join(plan.nodes[d].producer_id for d in node.dependencies) or "-"
        click.echo(f"  {node.producer_id:<24} {state.status:<10} attempts={state.attempts} deps={deps}")
        if state.error:
            click.echo(f"    {state.error.splitlines()[0]}")


@main.command("cancel")
@click.argument("plan_id")
@click.pass_context
def cancel_command(ctx: click.Context, plan_id: str) -> None:
    """Cancel a stored plan and clean up its worktrees."""
    config = _prepare(ctx)
    plan = _find_plan(PlanStore(config.storage.dir), plan_id)
    report = asyncio.run(_with_runner(config, lambda r: r.cancel(plan.id)))
    click.echo(f"Plan {plan.id} canceled; {report.summary()}")


@main.command("delete")
@click.argument("plan_id")
@click.pass_context
def delete_command(ctx: click.Context, plan_id: str) -> None:
    """Delete a stored plan together with its worktrees and logs."""
    config = _prepare(ctx)
    plan = _find_plan(PlanStore(config.storage.dir), plan_id)
    report = asyncio.run(_with_runner(config, lambda r: r.delete(plan.id)))
    click.echo(f"Plan {plan.id} deleted; {report.summary()}")


@main.command("retry")
@click.argument("plan_id")
@click.argument("producer_id")
@click.pass_context
def retry_command(ctx: click.Context, plan_id: str, producer_id: str) -> None:
    """Reset a failed or canceled node to pending."""
    config = _prepare(ctx)
    plan = _find_plan(PlanStore(config.storage.dir), plan_id)
    node = plan.node_by_producer_id(producer_id)
    if node is None:
        raise click.ClickException(f"No node with producerId {producer_id!r} in plan {plan.id}")
    ok = asyncio.run(_with_runner(config, lambda r: r.retry_node(plan.id, node.id)))
    if not ok:
        raise click.ClickException(f"Node {producer_id} is not failed or canceled")
    click.echo(f"Node {producer_id} reset to pending")


@main.command("finalize")
@click.argument("plan_id")
@click.pass_context
def finalize_command(ctx: click.Context, plan_id: str) -> None:
    """Merge a finished plan into its target branch, retrying a refused merge."""
    config = _prepare(ctx)
    plan = _find_plan(PlanStore(config.storage.dir), plan_id)
    ok, current = asyncio.run(_with_runner(config, lambda r: _finalize(r, plan.id)))
    if not ok:
        reason = current.final_merge_error if current else None
        raise click.ClickException(reason or f"Plan {plan.id} has nothing to merge yet")
    click.echo(f"Plan {plan.id} merged into {plan.target_branch} at {current.final_commit[:12]}")


async def _finalize(runner: PlanRunner, plan_id: str) -> tuple[bool, PlanInstance | None]:
    ok = await runner.finalize(plan_id)
    return ok, runner.get(plan_id)


@main.command("recover")
@click.pass_context
def recover_command(ctx: click.Context) -> None:
    """Reconcile stored plans with processes that are no longer alive."""
    config = _prepare(ctx)
    plans = asyncio.run(_with_runner(config, _list_plans))
    for plan in plans:
        click.echo(f"{plan.id[:8]}  {plan_status(plan)}")
    click.echo(f"Recovered {len(plans)} plan(s)")


async def _list_plans(runner: PlanRunner) -> list[PlanInstance]:
    return runner.list_plans()


async def _with_runner(config: AttoplanConfig, action: Any) -> Any:
    runner = PlanRunner(config)
    await runner.initialize()
    try:
        return await action(runner)
    except PlanError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        await runner.shutdown(cancel_running=False)
