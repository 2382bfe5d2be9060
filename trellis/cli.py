"""Command line interface for the Trellis workflow engine."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

import typer
import yaml

from trellis.api import WorkflowEngine, build_engine
from trellis.cli_utils.definition import load_definition
from trellis.cli_utils.payload import parse_payload
from trellis.errors import TrellisError
from trellis.graph import validate
from trellis.persistence.models import InstanceStatus, QueueItemStatus, TaskStatus

app = typer.Typer(help="CLI for Trellis workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
instance_app = typer.Typer(help="Commands for managing workflow instances")
task_app = typer.Typer(help="Commands for working on tasks")
worker_app = typer.Typer(help="Commands for running queue workers")
queue_app = typer.Typer(help="Commands for inspecting the work queue")

app.add_typer(definition_app, name="definition")
app.add_typer(instance_app, name="instance")
app.add_typer(task_app, name="task")
app.add_typer(worker_app, name="worker")
app.add_typer(queue_app, name="queue")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level for engine output"),
) -> None:
    """Trellis CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(coro_factory):
    """Run ``coro_factory(engine)`` and turn engine errors into exit code 1."""

    async def runner():
        engine = build_engine()
        try:
            return await coro_factory(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(runner())
    except TrellisError as exc:
        typer.secho(f"Error [{exc.code}]: {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _load(path: Path):
    try:
        return load_definition(path)
    except (ValueError, OSError, yaml.YAMLError) as exc:
        typer.secho(f"Cannot read definition {path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _payload(value: Optional[str]) -> dict:
    try:
        return parse_payload(value)
    except (ValueError, OSError) as exc:
        typer.secho(f"Invalid JSON payload: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# definitions
@definition_app.command("validate")
def definition_validate(path: Path) -> None:
    """
    Check a definition file without publishing it.

    Prints every error and warning and exits with code 1 when the graph is
    invalid.

    Example:
        trellis definition validate ./workflows/expense.yaml
    """
    result = validate(_load(path))
    for warning in result.warnings:
        typer.secho(f"warning: {warning}", fg=typer.colors.YELLOW)
    for error in result.errors:
        typer.secho(f"error: {error}", fg=typer.colors.RED)
    if not result.valid:
        raise typer.Exit(code=1)
    typer.echo("Definition is valid")


@definition_app.command("publish")
def definition_publish(path: Path) -> None:
    """
    Validate and publish a definition as the next version of its key.

    Example:
        trellis definition publish ./workflows/expense.yaml
        # Output: Published expense v2: 0f1c...
    """
    definition = _load(path)
    published = _run(lambda engine: engine.publish_definition(definition))
    typer.echo(f"Published {published.key} v{published.version}: {published.id}")


@definition_app.command("list")
def definition_list() -> None:
    """List published definitions."""
    definitions = _run(lambda engine: engine.list_definitions())
    if not definitions:
        typer.echo("No definitions found")
        return
    for d in definitions:
        typer.echo(f"{d.id}\t{d.key}\tv{d.version}\t{d.name or ''}")


# ----------------------------------------------------------------------
# instances
@instance_app.command("start")
def instance_start(
    definition: str = typer.Argument(..., help="Definition id or key"),
    context: Optional[str] = typer.Option(None, help="Initial context as JSON"),
    actor: Optional[str] = typer.Option(None, help="Principal starting the instance"),
) -> None:
    """
    Start an instance of the latest version of a definition.

    Example:
        trellis instance start expense --context '{"amount": 120}'
    """
    initial = _payload(context)
    instance = _run(lambda engine: engine.start_instance(definition, initial, actor))
    typer.echo(f"Started instance {instance.id}: {instance.status.value}")


@instance_app.command("list")
def instance_list(
    status: Optional[InstanceStatus] = typer.Option(None, help="Filter by status"),
) -> None:
    """List instances with their status and frontier."""
    instances = _run(lambda engine: engine.list_instances(status))
    if not instances:
        typer.echo("No instances found")
        return
    for i in instances:
        typer.echo(f"{i.id}\t{i.status.value}\t{','.join(i.frontier)}")


@instance_app.command("show")
def instance_show(
    instance_id: str,
    history: bool = typer.Option(True, help="Include the audit trail"),
) -> None:
    """
    Show the state of an instance and, optionally, its history.

    Example:
        trellis instance show 7d2c... --no-history
    """

    async def collect(engine: WorkflowEngine):
        state = await engine.instance_state(instance_id)
        context = await engine.context.current(instance_id)
        events = await engine.history(instance_id) if history else []
        return state, context, events

    state, context, events = _run(collect)
    typer.echo(f"Instance {state.instance_id}: {state.status.value}")
    if state.failure_reason:
        typer.echo(f"Failure: {state.failure_reason}")
    typer.echo(f"Frontier: {', '.join(state.frontier) or '(empty)'}")
    typer.echo(f"Open tasks: {', '.join(state.open_task_ids) or '(none)'}")
    typer.echo(f"Context v{context.version}: {json.dumps(context.context_data, default=str)}")
    for event in events:
        parts = [f"#{event.sequence}", event.event_type.value]
        if event.node_id:
            parts.append(f"node={event.node_id}")
        if event.task_id:
            parts.append(f"task={event.task_id}")
        if event.actor_id:
            parts.append(f"actor={event.actor_id}")
        if event.metadata:
            parts.append(json.dumps(event.metadata, default=str))
        typer.echo("- " + " ".join(parts))


@instance_app.command("stats")
def instance_stats(
    definition: Optional[str] = typer.Option(None, help="Restrict to one definition key"),
    as_json: bool = typer.Option(False, "--json", help="Print the statistics as JSON"),
) -> None:
    """
    Summarize instance outcomes, cycle time and per-node task durations.

    Example:
        trellis instance stats --definition expense
    """

    async def collect(engine: WorkflowEngine):
        return await engine.instance_stats(definition), await engine.node_stats(definition)

    summary, nodes = _run(collect)
    if as_json:
        _echo_json(
            {
                "instances": summary.model_dump(),
                "nodes": [
                    {**n.model_dump(), "failure_rate": n.failure_rate} for n in nodes
                ],
            }
        )
        return
    counts = ", ".join(f"{status} {count}" for status, count in summary.by_status.items())
    typer.echo(f"Instances: {summary.total} ({counts})")
    typer.echo(f"Completion rate: {summary.completion_rate}%")
    typer.echo(f"Pending tasks: {summary.pending_tasks}")
    cycle = summary.cycle_time
    typer.echo(
        f"Cycle time: n={cycle.count} avg={cycle.average:.1f}s "
        f"p50={cycle.median:.1f}s p95={cycle.p95:.1f}s max={cycle.maximum:.1f}s"
    )
    for n in nodes:
        typer.echo(
            f"{n.definition_key}\t{n.node_id}\tcompleted={n.completed}\tfailed={n.failed}"
            f"\twaiting={n.waiting}\tavg={n.durations.average:.1f}s"
            f"\tp95={n.durations.p95:.1f}s\tlongest_wait={n.longest_wait:.1f}s"
        )


@instance_app.command("advance")
def instance_advance(instance_id: str) -> None:
    """Enqueue an advancement request for an instance."""
    item = _run(lambda engine: engine.advance_trigger(instance_id))
    typer.echo(f"Queued {item.kind.value} item {item.id}")


@instance_app.command("suspend")
def instance_suspend(
    instance_id: str,
    actor: Optional[str] = typer.Option(None),
    reason: Optional[str] = typer.Option(None),
) -> None:
    """Suspend a running instance."""
    instance = _run(lambda engine: engine.suspend(instance_id, actor, reason))
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


@instance_app.command("resume")
def instance_resume(instance_id: str, actor: Optional[str] = typer.Option(None)) -> None:
    """Resume a suspended instance."""
    instance = _run(lambda engine: engine.resume(instance_id, actor))
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


@instance_app.command("fail")
def instance_fail(
    instance_id: str,
    reason: str = typer.Option(..., help="Why the instance is being failed"),
    actor: Optional[str] = typer.Option(None),
) -> None:
    """Administratively fail an instance."""
    instance = _run(lambda engine: engine.fail_instance(instance_id, reason, actor))
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


# ----------------------------------------------------------------------
# tasks
@task_app.command("list")
def task_list(
    instance: Optional[str] = typer.Option(None, help="Only tasks of this instance"),
    status: Optional[TaskStatus] = typer.Option(None, help="Filter by status"),
    assignee: Optional[str] = typer.Option(None, help="Filter by assignee"),
) -> None:
    """List tasks."""
    tasks = _run(lambda engine: engine.list_tasks(instance, status, assignee))
    if not tasks:
        typer.echo("No tasks found")
        return
    for t in tasks:
        typer.echo(
            f"{t.id}\t{t.instance_id}\t{t.node_id}\t{t.task_type.value}\t"
            f"{t.status.value}\t{t.assigned_to or '-'}"
        )


@task_app.command("complete")
def task_complete(
    task_id: str,
    output: Optional[str] = typer.Option(None, help="Task output as JSON or @file"),
    actor: Optional[str] = typer.Option(None, help="Principal completing the task"),
) -> None:
    """
    Complete a task with the given output.

    Example:
        trellis task complete 3a9e... --output '{"approved": true}' --actor alice
    """
    data = _payload(output)
    result = _run(lambda engine: engine.complete_task(task_id, data, actor))
    _echo_json(result)


@task_app.command("skip")
def task_skip(
    task_id: str,
    actor: Optional[str] = typer.Option(None),
    reason: Optional[str] = typer.Option(None),
) -> None:
    """Skip a task; the instance continues along the normal transitions."""
    task = _run(lambda engine: engine.skip_task(task_id, actor, reason))
    typer.echo(f"Task {task.id}: {task.status.value}")


# ----------------------------------------------------------------------
# worker / queue
@worker_app.command("run")
def worker_run(
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run indefinitely)"
    ),
    concurrency: int = typer.Option(1, help="Claim loops to run in this process"),
    worker_id: Optional[str] = typer.Option(None, help="Identifier recorded on claims"),
) -> None:
    """
    Run an execution worker that processes the work queue.

    Example:
        trellis worker run --concurrency 4 --lifespan 300
    """

    async def run(engine: WorkflowEngine):
        worker = engine.worker(worker_id)
        typer.echo(f"Starting worker {worker.worker_id}")
        await worker.run(lifespan=lifespan, concurrency=concurrency)

    _run(run)


@queue_app.command("list")
def queue_list(
    status: Optional[QueueItemStatus] = typer.Option(None, help="Filter by status"),
) -> None:
    """List queue items."""
    items = _run(lambda engine: engine.list_queue_items(status))
    if not items:
        typer.echo("No queue items found")
        return
    for item in items:
        typer.echo(
            f"{item.id}\t{item.kind.value}\t{item.status.value}\t"
            f"attempts={item.attempt_count}\t{item.last_error or ''}"
        )


@queue_app.command("prune")
def queue_prune(
    retention_hours: Optional[float] = typer.Option(
        None, help="Keep items settled within this many hours"
    ),
) -> None:
    """Delete settled queue items older than the retention window."""
    retention = timedelta(hours=retention_hours) if retention_hours is not None else None
    removed = _run(lambda engine: engine.prune_queue(retention))
    typer.echo(f"Pruned {removed} queue item(s)")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
