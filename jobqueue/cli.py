import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich import print
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import Settings, effective_value, set_override
from .errors import JobQueueError
from .models import JobStatus
from .registry import JobRegistry, discover_handlers
from .scheduler import JobQueue
from .storage import JobStore
from .utils import after_ms, parse_delay_to_seconds
from .worker import run_worker

app = typer.Typer(help="jobqueue - persistent background job queue: workers, retries and introspection.")
config_app = typer.Typer(help="Persisted configuration overrides.")
app.add_typer(config_app, name="config")


@app.callback()
def main(
    ctx: typer.Context,
    db: Optional[Path] = typer.Option(None, "--db", envvar="JOBQUEUE_DB", help="Path to the jobs database"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )
    ctx.obj = {"db": db or Settings.from_env().db_path}


def _store(ctx: typer.Context) -> JobStore:
    return JobStore(ctx.obj["db"])


def _queue(ctx: typer.Context, handlers: Optional[str] = None, **overrides) -> JobQueue:
    store = _store(ctx)
    settings = Settings.load(store)
    if overrides:
        settings = settings.model_copy(update={k: v for k, v in overrides.items() if v is not None})
    registry = JobRegistry()
    if handlers:
        discover_handlers(handlers, registry)
    return JobQueue(store, registry=registry, settings=settings)


# -----------------------------
# Worker
# -----------------------------
@app.command()
def worker(
    ctx: typer.Context,
    handlers: str = typer.Option(..., "--handlers", help="Package containing job handler modules"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", help="Max concurrent jobs"),
    poll_interval_ms: Optional[int] = typer.Option(None, "--poll-interval-ms", help="Scheduler tick interval"),
):
    """Run the scheduler and worker pool until Ctrl+C."""
    queue = _queue(ctx, handlers, max_concurrent_jobs=concurrency, poll_interval_ms=poll_interval_ms)
    if not queue.get_available_job_types():
        print(f"[red]No job handlers found in[/red] {handlers}")
        raise typer.Exit(1)
    print(f"Starting worker pool ({queue.pool.max_workers} slots). Ctrl+C to stop.")
    run_worker(queue)


# -----------------------------
# Enqueue
# -----------------------------
@app.command()
def enqueue(
    ctx: typer.Context,
    job_type: str = typer.Argument(..., help="Registered job type"),
    handlers: str = typer.Option(..., "--handlers", help="Package containing job handler modules"),
    target: str = typer.Option(..., "--target", help="Target object id"),
    user: str = typer.Option(..., "--user", help="Owning user id"),
    params: str = typer.Option("{}", "--params", help="JSON parameters"),
    priority: Optional[int] = typer.Option(None, help="Higher runs first"),
    timeout_ms: Optional[int] = typer.Option(None, "--timeout-ms"),
    max_retries: Optional[int] = typer.Option(None, "--max-retries"),
    delay: Optional[str] = typer.Option(None, "--delay", help="Run after a delay, e.g. 20s, 5m, 1h30m"),
):
    """Add a new job to the queue."""
    try:
        parameters = json.loads(params)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"Invalid JSON: {e.msg}")
    try:
        run_at = after_ms(parse_delay_to_seconds(delay) * 1000) if delay else None
    except ValueError as e:
        raise typer.BadParameter(str(e))

    queue = _queue(ctx, handlers)
    try:
        job_id = queue.perform_later(
            job_type,
            target_id=target,
            parameters=parameters,
            user_id=user,
            priority=priority,
            timeout_ms=timeout_ms,
            max_retries=max_retries,
            run_at=run_at,
        )
    except JobQueueError as e:
        print(f"[red]Error:[/red] {e.describe()}")
        raise typer.Exit(1)
    print(f"[green]Enqueued[/green] job [bold]{job_id}[/bold]")


# -----------------------------
# Introspection
# -----------------------------
@app.command()
def status(ctx: typer.Context, user: Optional[str] = typer.Option(None, "--user", help="Only this user's jobs")):
    """Show job counts by status."""
    stats = _store(ctx).counts_by_status(user_id=user)
    tbl = Table(title="Jobs" if not user else f"Jobs ({user})")
    tbl.add_column("Status")
    tbl.add_column("Count", justify="right")
    for name, count in stats.model_dump().items():
        tbl.add_row(name.upper(), str(count))
    tbl.add_row("TOTAL", str(stats.total))
    Console().print(tbl)


@app.command("list")
def list_cmd(
    ctx: typer.Context,
    state: Optional[JobStatus] = typer.Option(None, "--status", help="Filter by status"),
    user: Optional[str] = typer.Option(None, "--user", help="Filter by user"),
    limit: int = typer.Option(50, "--limit"),
):
    """List jobs, oldest first."""
    rows = _store(ctx).list_jobs(status=state, user_id=user, limit=limit)
    t = Table(title=f"Jobs{'' if not state else f' ({state.value})'}")
    for c in ["id", "type", "status", "priority", "retries", "user", "target", "next_retry_at", "error"]:
        t.add_column(c)
    for job in rows:
        t.add_row(
            job.id,
            job.type,
            job.status.value,
            str(job.priority),
            f"{job.retry_count}/{job.max_retries}",
            job.user_id,
            job.target_id,
            job.next_retry_at.isoformat() if job.next_retry_at else "",
            (job.error or "")[:80],
        )
    Console().print(t)


@app.command()
def show(ctx: typer.Context, job_id: str):
    """Print one job as JSON."""
    job = _store(ctx).get(job_id)
    if job is None:
        print(f"[red]Job not found:[/red] {job_id}")
        raise typer.Exit(1)
    Console().print_json(job.model_dump_json())


@app.command()
def types(handlers: str = typer.Option(..., "--handlers", help="Package containing job handler modules")):
    """List the job types a handler package provides."""
    registry = JobRegistry()
    discover_handlers(handlers, registry)
    t = Table(title=f"Job types ({handlers})")
    for c in ["type", "priority", "timeout_ms", "max_retries", "description"]:
        t.add_column(c)
    for name in registry.names():
        d = registry.get(name)
        t.add_row(name, _fmt(d.priority), _fmt(d.timeout_ms), _fmt(d.max_retries), d.description)
    Console().print(t)


@app.command()
def cancel(ctx: typer.Context, job_id: str):
    """Fail a PENDING job so it never runs."""
    if _queue(ctx).cancel_job(job_id):
        print(f"[yellow]Cancelled[/yellow] {job_id}")
    else:
        print(f"[red]Not pending:[/red] {job_id}")
        raise typer.Exit(1)


# -----------------------------
# Config
# -----------------------------
@config_app.command("set")
def config_set_cmd(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Config key"),
    value: str = typer.Argument(..., help="Value"),
):
    try:
        set_override(_store(ctx), key, value)
    except ValueError as e:
        print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    print(f"set {key}={value}")


@config_app.command("get")
def config_get_cmd(ctx: typer.Context, key: Optional[str] = typer.Argument(None, help="Config key")):
    settings = Settings.load(_store(ctx))
    if key is None:
        Console().print_json(data=settings.model_dump(mode="json"))
        return
    try:
        print(effective_value(settings, key))
    except ValueError as e:
        print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


def _fmt(value) -> str:
    return "-" if value is None else str(value)
