"""
taskfleet CLI
=============

Command-line interface for the coordination core.

Commands:
    taskfleet init [--slots N] [--name NAME] [--backend sqlite|file]
    taskfleet tasks [add|list|claim|complete|fail|release|audit]
    taskfleet workers [provision|spawn|heartbeat|finish|list]
    taskfleet dashboard                 - Project overview
    taskfleet events                    - Event log, newest first
    taskfleet supervise                 - Run the health check loop
    taskfleet worker run <worker_id>    - Run a worker loop in this process
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import config_path, load_config
from .errors import TaskFleetError, ValidationError
from .orchestrator import Supervisor, init_project
from .state.records import TaskStatus, WorkerStatus
from .workers.base import create_worker
from .workers.launcher import create_launcher

console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Route the package logger through rich"""
    logger = logging.getLogger("taskfleet")
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def _abort(message: str) -> None:
    console.print(f"[red]{message}[/red]")
    sys.exit(1)


def _open(ctx: click.Context, dry_run: bool = False) -> Supervisor:
    """Supervisor for the project at --root"""
    root = ctx.obj["root"]
    if not config_path(root).exists():
        _abort(f"Not a taskfleet project: {root} (run 'taskfleet init' first)")
    config = load_config(root)
    return Supervisor(config, launcher=create_launcher(config, dry_run=dry_run))


@click.group()
@click.version_option(version="0.1.0", prog_name="taskfleet")
@click.option("--root", "-r", default=".", envvar="TASKFLEET_ROOT",
              type=click.Path(file_okay=False), help="Project root (default: current directory)")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, root: str, verbose: bool):
    """taskfleet - Coordinate a fleet of workers over a shared task queue"""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["root"] = Path(root)


@main.command()
@click.option("--slots", "-s", default=4, show_default=True, help="Capacity slots")
@click.option("--name", "-n", default=None, help="Project name (default: root directory name)")
@click.option("--backend", "-b", type=click.Choice(["sqlite", "file"]), default="sqlite", show_default=True)
@click.pass_context
def init(ctx: click.Context, slots: int, name: Optional[str], backend: str):
    """Initialize a project."""
    supervisor = init_project(ctx.obj["root"], max_slots=slots, project_name=name, backend=backend)
    meta = supervisor.store.all_meta()
    console.print(f"[green]✓ Project {meta.get('name')} initialized[/green]")
    console.print(f"[dim]Store:[/dim] {supervisor.store.backend_name} at {supervisor.store.location}")
    console.print(f"[dim]Slots:[/dim] {supervisor.store.slot_usage().total}")
    supervisor.close()


# =============================================================================
# Tasks
# =============================================================================

@main.group()
def tasks():
    """Manage the task queue."""
    pass


@tasks.command("add")
@click.argument("task_type")
@click.argument("payloads", nargs=-1)
@click.option("--layer", "-l", default=0, show_default=True, help="Target hierarchy layer")
@click.option("--audit", is_flag=True, help="Require an audit before the task counts as passed")
@click.option("--from-file", "-f", type=click.File("r"), default=None, help="One payload per line")
@click.pass_context
def tasks_add(ctx: click.Context, task_type: str, payloads: tuple, layer: int, audit: bool, from_file):
    """Enqueue one task per payload."""
    items = list(payloads)
    if from_file is not None:
        items.extend(line.rstrip("\n") for line in from_file if line.strip())
    if not items:
        _abort("No payloads given")

    supervisor = _open(ctx)
    ids = supervisor.queue.enqueue(task_type, items, layer=layer, requires_audit=audit)
    console.print(f"[green]✓ Created {len(ids)} task(s):[/green] {', '.join(str(i) for i in ids)}")
    supervisor.close()


@tasks.command("list")
@click.option("--status", "-s", type=click.Choice([s.value for s in TaskStatus]), default=None)
@click.option("--type", "-t", "task_type", default=None, help="Filter by task type")
@click.option("--layer", "-l", type=int, default=None, help="Filter by layer")
@click.option("--owner", "-o", default=None, help="Filter by owning worker")
@click.option("--limit", default=50, show_default=True)
@click.pass_context
def tasks_list(ctx: click.Context, status, task_type, layer, owner, limit):
    """List tasks."""
    supervisor = _open(ctx)
    items = supervisor.queue.list(status=status, task_type=task_type, layer=layer, owner=owner, limit=limit)
    supervisor.close()

    if not items:
        console.print("[dim]No tasks found[/dim]")
        return

    table = Table(title="Tasks")
    table.add_column("ID", justify="right", no_wrap=True)
    table.add_column("Type")
    table.add_column("Layer", justify="right")
    table.add_column("Status", no_wrap=True)
    table.add_column("Owner")
    table.add_column("Retries", justify="right")
    table.add_column("Title")

    for task in items:
        table.add_row(
            str(task.id),
            task.task_type,
            str(task.layer),
            _format_status(task.status),
            task.owner or "-",
            str(task.retry_count),
            task.title[:40],
        )

    console.print(table)


@tasks.command("claim")
@click.argument("worker_id")
@click.option("--type", "-t", "task_type", default=None)
@click.option("--layer", "-l", type=int, default=None)
@click.pass_context
def tasks_claim(ctx: click.Context, worker_id: str, task_type, layer):
    """Claim the next pending task for a worker."""
    supervisor = _open(ctx)
    task = supervisor.queue.claim_next(worker_id, task_type=task_type, layer=layer)
    supervisor.close()

    if task is None:
        console.print("[yellow]No task available[/yellow]")
        return
    console.print(f"[green]✓ Claimed task {task.id}[/green] ({task.task_type}) for {worker_id}")


@tasks.command("complete")
@click.argument("task_id", type=int)
@click.option("--result", "result_path", default=None, help="Where the output was written")
@click.option("--worker", "worker_id", default=None, help="Only complete if owned by this worker")
@click.pass_context
def tasks_complete(ctx: click.Context, task_id: int, result_path, worker_id):
    """Mark a processing task as completed."""
    supervisor = _open(ctx)
    try:
        task = supervisor.queue.complete(task_id, result_path=result_path, worker_id=worker_id)
    except ValidationError as e:
        _abort(str(e))
    finally:
        supervisor.close()
    console.print(f"[green]✓ Task {task.id}:[/green] {_format_status(task.status)}")


@tasks.command("fail")
@click.argument("task_id", type=int)
@click.argument("message")
@click.pass_context
def tasks_fail(ctx: click.Context, task_id: int, message: str):
    """Mark a task as failed."""
    supervisor = _open(ctx)
    try:
        task = supervisor.queue.fail(task_id, message)
    except ValidationError as e:
        _abort(str(e))
    finally:
        supervisor.close()
    console.print(f"[red]✗ Task {task.id} failed:[/red] {message}")


@tasks.command("release")
@click.argument("worker_id")
@click.pass_context
def tasks_release(ctx: click.Context, worker_id: str):
    """Return a worker's active tasks to the queue."""
    supervisor = _open(ctx)
    count = supervisor.queue.release(worker_id)
    supervisor.close()
    console.print(f"Released {count} task(s) from {worker_id}")


@tasks.command("audit")
@click.argument("task_id", type=int)
@click.option("--verdict", type=click.Choice(["request", "pass", "fail"]), required=True)
@click.option("--reason", default=None)
@click.pass_context
def tasks_audit(ctx: click.Context, task_id: int, verdict: str, reason):
    """Request an audit or record its verdict."""
    supervisor = _open(ctx)
    try:
        if verdict == "request":
            task = supervisor.queue.request_audit(task_id)
        else:
            task = supervisor.queue.resolve_audit(task_id, passed=verdict == "pass", reason=reason)
    except ValidationError as e:
        _abort(str(e))
    finally:
        supervisor.close()
    console.print(f"Task {task.id}: {_format_status(task.status)} (retries {task.retry_count})")


# =============================================================================
# Workers
# =============================================================================

@main.group()
def workers():
    """Manage the worker fleet."""
    pass


@workers.command("provision")
@click.option("--parent", "-p", "parent_id", default=None, help="Parent worker id (omit for the root)")
@click.option("--layer", "-l", default=0, show_default=True)
@click.option("--role", default=None, help="Override the layer's role")
@click.option("--spawn", "spawn_now", is_flag=True, help="Launch the worker right away")
@click.option("--dry-run", is_flag=True, help="Record launches without starting processes")
@click.pass_context
def workers_provision(ctx: click.Context, parent_id, layer: int, role, spawn_now: bool, dry_run: bool):
    """Provision a worker."""
    supervisor = _open(ctx, dry_run=dry_run)
    try:
        worker = supervisor.fleet.provision(parent_id, layer, role=role)
        console.print(f"[green]✓ Provisioned {worker.id}[/green] ({worker.role}, layer {worker.layer})")
        console.print(f"[dim]Workspace:[/dim] {worker.folder_path}")
        if spawn_now and not supervisor.fleet.spawn(worker.id):
            console.print(f"[yellow]{worker.id} provisioned but not spawned[/yellow]")
    except ValidationError as e:
        _abort(str(e))
    finally:
        supervisor.close()


@workers.command("spawn")
@click.argument("worker_id")
@click.option("--dry-run", is_flag=True, help="Record the launch without starting a process")
@click.pass_context
def workers_spawn(ctx: click.Context, worker_id: str, dry_run: bool):
    """Launch a provisioned worker."""
    supervisor = _open(ctx, dry_run=dry_run)
    try:
        spawned = supervisor.fleet.spawn(worker_id)
    except ValidationError as e:
        _abort(str(e))
    finally:
        supervisor.close()
    if spawned:
        console.print(f"[green]✓ Spawned {worker_id}[/green]")
    else:
        _abort(f"Could not spawn {worker_id}")


@workers.command("heartbeat")
@click.argument("worker_id")
@click.option("--status", "-s", type=click.Choice([s.value for s in WorkerStatus]), default=None)
@click.option("--stage", default=None)
@click.pass_context
def workers_heartbeat(ctx: click.Context, worker_id: str, status, stage):
    """Report liveness for a worker."""
    supervisor = _open(ctx)
    try:
        worker = supervisor.fleet.heartbeat(worker_id, status=status, stage=stage)
    except TaskFleetError as e:
        _abort(str(e))
    finally:
        supervisor.close()
    console.print(f"{worker.id}: {worker.status} at {worker.last_heartbeat:%H:%M:%S}")


@workers.command("finish")
@click.argument("worker_id")
@click.option("--reason", default="no more work", show_default=True)
@click.pass_context
def workers_finish(ctx: click.Context, worker_id: str, reason: str):
    """Write a worker's finished sentinel and retire it."""
    supervisor = _open(ctx)
    try:
        worker = supervisor.fleet.mark_finished(worker_id, reason)
    except ValidationError as e:
        _abort(str(e))
    finally:
        supervisor.close()
    console.print(f"{worker.id}: {worker.status}")


@workers.command("list")
@click.option("--status", "-s", type=click.Choice([s.value for s in WorkerStatus]), default=None)
@click.pass_context
def workers_list(ctx: click.Context, status):
    """List workers."""
    supervisor = _open(ctx)
    items = supervisor.fleet.list(status=status)
    supervisor.close()

    if not items:
        console.print("[dim]No workers found[/dim]")
        return

    table = Table(title="Workers")
    table.add_column("ID", no_wrap=True)
    table.add_column("Role")
    table.add_column("Layer", justify="right")
    table.add_column("Parent")
    table.add_column("Status", no_wrap=True)
    table.add_column("Task", justify="right")
    table.add_column("Done/Failed", justify="right")
    table.add_column("Last Heartbeat")

    for worker in items:
        table.add_row(
            worker.id,
            worker.role,
            str(worker.layer),
            worker.parent_id or "-",
            _format_status(worker.status),
            str(worker.current_task_id) if worker.current_task_id else "-",
            f"{worker.tasks_completed}/{worker.tasks_failed}",
            worker.last_heartbeat.strftime("%Y-%m-%d %H:%M:%S") if worker.last_heartbeat else "N/A",
        )

    console.print(table)


# =============================================================================
# Supervision
# =============================================================================

@main.command()
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.pass_context
def dashboard(ctx: click.Context, as_json: bool):
    """Show the project overview."""
    supervisor = _open(ctx)
    view = supervisor.dashboard()
    supervisor.close()

    if as_json:
        click.echo(json.dumps(view.to_dict(), indent=2, default=str))
        return

    console.print(f"\n[bold blue]{view.project.get('name', 'taskfleet')}[/bold blue]\n")

    table = Table(show_header=False, box=None)
    table.add_column("Field", style="dim")
    table.add_column("Value")

    tasks_view = view.tasks
    table.add_row("Tasks", f"{tasks_view.total} ({tasks_view.progress_percent}% done, {tasks_view.global_status})")
    for status, count in sorted(tasks_view.by_status.items()):
        table.add_row(f"  {status}", str(count))
    table.add_row("Workers", str(view.workers_total))
    for status, count in sorted(view.workers_by_status.items()):
        table.add_row(f"  {status}", str(count))
    table.add_row("Slots", f"{view.slots.used}/{view.slots.total}")
    if view.unresponsive:
        table.add_row("Unresponsive", f"[red]{', '.join(view.unresponsive)}[/red]")

    console.print(table)


@main.command()
@click.option("--worker", "-w", "worker_id", default=None, help="Only this worker's events")
@click.option("--limit", default=50, show_default=True)
@click.pass_context
def events(ctx: click.Context, worker_id, limit: int):
    """Show the event log, newest first."""
    supervisor = _open(ctx)
    items = supervisor.events(worker_id=worker_id, limit=limit)
    supervisor.close()

    if not items:
        console.print("[dim]No events[/dim]")
        return

    table = Table(title="Events")
    table.add_column("Time")
    table.add_column("Event", no_wrap=True)
    table.add_column("Worker", no_wrap=True)
    table.add_column("Task", justify="right")
    table.add_column("Details")

    for event in items:
        table.add_row(
            event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            event.event_type,
            event.worker_id or "-",
            str(event.task_id) if event.task_id is not None else "-",
            (event.details or "")[:50],
        )

    console.print(table)


@main.command()
@click.option("--interval", type=float, default=None, help="Seconds between health checks")
@click.option("--spawn", "spawn_queued", is_flag=True, help="Spawn queued workers first")
@click.option("--dry-run", is_flag=True, help="Record launches without starting processes")
@click.pass_context
def supervise(ctx: click.Context, interval, spawn_queued: bool, dry_run: bool):
    """Run recovery and the health check loop."""
    supervisor = _open(ctx, dry_run=dry_run)

    def show(report):
        if report.released or report.restarted or report.alerts:
            console.print(
                f"[dim]{report.checked_at:%H:%M:%S}[/dim] "
                f"unhealthy={len(report.unhealthy)} released={sum(report.released.values())} "
                f"restarted={len(report.restarted)} alerts={len(report.alerts)}"
            )

    try:
        result = supervisor.run(interval_sec=interval, spawn=spawn_queued, on_tick=show)
    finally:
        supervisor.close()

    if result.crash_detected:
        console.print(f"[yellow]Recovered from unclean shutdown, released {result.tasks_released} task(s)[/yellow]")
    reason = supervisor.monitor.stopped_reason if supervisor.monitor else "monitoring disabled"
    console.print(f"[green]Supervisor stopped:[/green] {reason}")


@main.group()
def worker():
    """Worker-side commands."""
    pass


@worker.command("run")
@click.argument("worker_id")
@click.option("--type", "-t", "task_type", default=None, help="Only claim tasks of this type")
@click.pass_context
def worker_run(ctx: click.Context, worker_id: str, task_type):
    """Run the worker loop for a provisioned worker."""
    supervisor = _open(ctx)
    try:
        runner = create_worker(supervisor.config, worker_id, task_type=task_type, fleet=supervisor.fleet)
        processed = runner.run()
    except TaskFleetError as e:
        _abort(str(e))
    finally:
        supervisor.close()
    console.print(f"[green]{worker_id} processed {processed} task(s)[/green]")


def _format_status(status: str) -> str:
    """Format status with color"""
    colors = {
        "pending": "white",
        "processing": "yellow",
        "task_completed": "green",
        "audit_in_progress": "cyan",
        "audit_passed": "green",
        "failed": "red",
        "queued": "white",
        "slot_assigned": "cyan",
        "idle": "white",
        "working": "yellow",
        "awaiting_subordinates": "cyan",
        "done": "green",
        "error": "red",
        "shutdown": "dim",
    }
    color = colors.get(status, "white")
    return f"[{color}]{status}[/{color}]"


if __name__ == "__main__":
    main()
