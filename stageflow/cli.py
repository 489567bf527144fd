"""Command line interface for stageflow workers and operators."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
from typing import List, Optional

import typer

from stageflow.admin import WorkflowAdmin
from stageflow.config import load_config
from stageflow.context import OrchestratorContext
from stageflow.errors import StageflowError
from stageflow.ingest import IngestionService, scheduled_tick
from stageflow.projection import project_status
from stageflow.stages import StageRegistry

app = typer.Typer(help="CLI for stageflow document pipelines")

# Command groups
workflow_app = typer.Typer(help="Commands for inspecting and repairing workflows")
deadletter_app = typer.Typer(help="Commands for managing dead letters")

app.add_typer(workflow_app, name="workflow")
app.add_typer(deadletter_app, name="deadletter")


def load_registry(spec: Optional[str]) -> StageRegistry:
    """Import a ``module:attribute`` stage registry, or return an empty one."""
    if not spec:
        return StageRegistry()
    module_name, _, attr = spec.partition(":")
    module = importlib.import_module(module_name)
    registry = getattr(module, attr or "registry")
    if not isinstance(registry, StageRegistry):
        raise typer.BadParameter(f"{spec} is not a StageRegistry")
    return registry


def _context(ctx: typer.Context) -> OrchestratorContext:
    state = ctx.ensure_object(dict)
    if "context" not in state:
        config = load_config(state.get("config_path"))
        state["context"] = OrchestratorContext.create(
            load_registry(state.get("registry")), config=config
        )
    return state["context"]


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, help="Path to a YAML config file"),
    registry: Optional[str] = typer.Option(
        None,
        envvar="STAGEFLOW_REGISTRY",
        help="Stage registry to load, as module:attribute",
    ),
    log_level: str = typer.Option("INFO", help="Logging level"),
) -> None:
    """stageflow CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    state = ctx.ensure_object(dict)
    state["config_path"] = config
    state["registry"] = registry


@app.command("worker")
def worker(
    ctx: typer.Context,
    stage: Optional[List[str]] = typer.Option(
        None, help="Stage queue to consume (repeatable, default: whole pipeline)"
    ),
    lifespan: Optional[float] = None,
) -> None:
    """
    Run queue consumers for pipeline stages.

    Example:
        stageflow --registry myapp.stages:registry worker
        stageflow worker --stage extraction --stage persistence --lifespan 300
    """
    context = _context(ctx)
    try:
        pool = context.consumer_pool(stage or None)
    except ValueError as exc:
        _fail(str(exc))
    typer.echo(f"Starting consumers: {', '.join(pool.queues)}")

    async def run() -> None:
        await context.transport.connect()
        try:
            await pool.start(lifespan=lifespan)
        finally:
            await context.transport.disconnect()

    asyncio.run(run())


@app.command("tick")
def tick(
    ctx: typer.Context,
    loop: bool = typer.Option(False, help="Keep ticking on the configured interval"),
) -> None:
    """Run the recovery sweep and one scheduler tick."""
    context = _context(ctx)

    async def run() -> None:
        await context.transport.connect()
        try:
            while True:
                tick_report, sweep_report = await scheduled_tick(context)
                typer.echo(
                    f"scheduled={len(tick_report.scheduled)} "
                    f"reclaimed={len(tick_report.reclaimed)} "
                    f"skipped={len(tick_report.skipped)} "
                    f"auto_completed={len(sweep_report.completed)} "
                    f"failed={len(sweep_report.failed)}"
                )
                if not loop:
                    break
                await asyncio.sleep(context.config.scheduler.interval_seconds)
        finally:
            await context.transport.disconnect()

    asyncio.run(run())


@app.command("submit")
def submit(
    ctx: typer.Context,
    subject_id: str,
    tenant_id: str,
    stage_input: Optional[str] = typer.Option(None, "--input", help="JSON stage input"),
    inline: bool = typer.Option(False, help="Run the pipeline in this process"),
) -> None:
    """Create a workflow, optionally running it inline."""
    context = _context(ctx)
    data = json.loads(stage_input) if stage_input else None

    async def run() -> None:
        service = IngestionService(context)
        record = await service.create_workflow(
            subject_id, tenant_id, stage_input=data, run_inline=inline
        )
        typer.echo(f"Workflow created: {record.id}")
        await service.drain()

    asyncio.run(run())


@app.command("run")
def run_sequential(ctx: typer.Context, workflow_id: str) -> None:
    """Run every remaining stage of a workflow in this process."""
    context = _context(ctx)
    try:
        result = asyncio.run(context.sequential.run(workflow_id))
    except StageflowError as exc:
        _fail(str(exc))
    status = result.workflow.status if result.workflow else "unknown"
    typer.echo(f"{workflow_id}\t{result.outcome}\t{status}")


@workflow_app.command("list")
def workflow_list(
    ctx: typer.Context,
    tenant: Optional[str] = None,
    status: Optional[str] = None,
) -> None:
    """
    List workflows with their status and current stage.

    Example:
        stageflow workflow list --status failed
        # Output: 3f0c...    failed    draft_creation    t-42
    """
    admin = WorkflowAdmin(_context(ctx))
    workflows = asyncio.run(admin.list_workflows(tenant_id=tenant, status=status))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.status}\t{wf.current_stage or '-'}\t{wf.tenant_id}")


@workflow_app.command("show")
def workflow_show(ctx: typer.Context, workflow_id: str) -> None:
    """Show a workflow, its stage history and what the tenant sees."""
    admin = WorkflowAdmin(_context(ctx))
    try:
        view = asyncio.run(admin.get_workflow_view(workflow_id))
    except StageflowError as exc:
        _fail(str(exc))
    wf = view.workflow
    typer.echo(f"Workflow {wf.id}: {wf.status} ({wf.progress_percent}%)")
    typer.echo(f"Subject: {wf.subject_id}  Tenant: {wf.tenant_id}  Stage: {wf.current_stage}")
    if wf.metadata.lock:
        lock = wf.metadata.lock
        typer.echo(f"Lock: {lock.lock_id} {lock.status} held by {lock.holder}")
    if wf.metadata.error:
        typer.echo(f"Error: [{wf.metadata.error.category}] {wf.metadata.error.message}")
    for entry in view.history:
        typer.echo(
            f"- {entry.stage}: {entry.status} (attempt {entry.attempt}, {entry.timestamp})"
            + (f" {entry.detail}" if entry.detail else "")
        )
    typer.echo(f"Tenant status: {view.tenant_status.state} - {view.tenant_status.message}")


@workflow_app.command("reset")
def workflow_reset(ctx: typer.Context, workflow_id: str) -> None:
    """Move a failed workflow back to pending."""
    admin = WorkflowAdmin(_context(ctx))
    try:
        wf = asyncio.run(admin.reset_workflow(workflow_id))
    except (StageflowError, ValueError) as exc:
        _fail(str(exc))
    typer.echo(f"{wf.id}\t{wf.status}")


@workflow_app.command("fail")
def workflow_fail(
    ctx: typer.Context,
    workflow_id: str,
    reason: str = typer.Option("cancelled by operator", help="Reason recorded on the workflow"),
) -> None:
    """Mark a pending or processing workflow as failed."""
    admin = WorkflowAdmin(_context(ctx))
    try:
        wf = asyncio.run(admin.mark_failed(workflow_id, reason))
    except (StageflowError, ValueError) as exc:
        _fail(str(exc))
    typer.echo(f"{wf.id}\t{wf.status}\t{project_status(wf).state}")


@deadletter_app.command("list")
def deadletter_list(
    ctx: typer.Context,
    tenant: Optional[str] = None,
    status: Optional[str] = typer.Option(None, help="open or retried"),
) -> None:
    """List dead-letter entries."""
    admin = WorkflowAdmin(_context(ctx))
    entries = asyncio.run(admin.list_dead_letters(tenant_id=tenant, status=status))
    if not entries:
        typer.echo("No dead letters found")
        return
    for entry in entries:
        typer.echo(
            f"{entry.id}\t{entry.workflow_id}\t{entry.stage_name}\t{entry.error_category}"
            f"\t{entry.attempt_count}\t{entry.status}"
        )


@deadletter_app.command("retry")
def deadletter_retry(
    ctx: typer.Context,
    entry_id: str,
    force: bool = typer.Option(False, help="Retry even when the entry needs operator action"),
) -> None:
    """Re-enqueue the stage recorded by a dead-letter entry."""
    context = _context(ctx)
    admin = WorkflowAdmin(context)

    async def run():
        await context.transport.connect()
        try:
            return await admin.retry_dead_letter(entry_id, force=force)
        finally:
            await context.transport.disconnect()

    try:
        job = asyncio.run(run())
    except (StageflowError, ValueError) as exc:
        _fail(str(exc))
    typer.echo(f"Re-enqueued {job.stage} for workflow {job.workflow_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
