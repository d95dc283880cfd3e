"""Typer CLI entrypoint for the TSDR harvester."""

from __future__ import annotations

import json
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Optional

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from .config import ConfigRepository, ExportFormat
from .errors import HarvesterError
from .jobs import Job, JobStatus
from .logging_conf import configure_logging, default_log_dir, tail_log
from .scheduler import APSchedulerAdapter
from .service import JobService, create_service
from .ui import ProgressReporter

app = typer.Typer(
    help="Bulk USPTO TSDR trademark harvester",
    no_args_is_help=True,
    rich_markup_mode=None,
)

console = Console()


@dataclass
class AppState:
    repository: ConfigRepository
    service: JobService
    scheduler: APSchedulerAdapter


def build_state(verbose: bool) -> AppState:
    configure_logging(verbose=verbose)
    repository = ConfigRepository()
    service = create_service(repository)
    scheduler = APSchedulerAdapter()
    return AppState(repository=repository, service=service, scheduler=scheduler)


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


@contextmanager
def _handle_errors() -> Iterator[None]:
    try:
        yield
    except HarvesterError as exc:
        console.print(str(exc), style="red")
        raise typer.Exit(code=1) from exc


def read_identifier_file(path: Path) -> list[str]:
    """One serial number per line; blank lines and ``#`` comments are skipped."""

    identifiers: list[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        text = line.strip()
        if not text or text.startswith("#"):
            continue
        identifiers.append(text)
    return identifiers


def _format_ts(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _render_jobs_table(jobs: Iterable[Job]) -> Table:
    jobs = list(jobs)
    table = Table(title=f"Jobs · {len(jobs)}", box=box.SIMPLE_HEAD)
    table.add_column("Job ID", style="cyan", no_wrap=True)
    table.add_column("Status", style="magenta")
    table.add_column("Progress", justify="right")
    table.add_column("Failed", style="red", justify="right")
    table.add_column("Attorney", style="yellow", justify="right")
    table.add_column("Created", style="green")
    for job in jobs:
        counts = job.counts
        table.add_row(
            job.id,
            job.status.value,
            f"{counts.processed}/{counts.total}",
            str(counts.failed),
            str(counts.had_attorney),
            _format_ts(job.created_at),
        )
    return table


def _render_job_detail(job: Job) -> Table:
    counts = job.counts
    table = Table(title=f"Job {job.id}", box=box.MINIMAL_DOUBLE_HEAD, show_header=False)
    table.add_column("Field", style="dim")
    table.add_column("Value", style="cyan")
    table.add_row("Status", job.status.value)
    table.add_row("Total", str(counts.total))
    table.add_row("Processed", str(counts.processed))
    table.add_row("Remaining", str(counts.remaining))
    table.add_row("Succeeded", str(counts.succeeded))
    table.add_row("Failed", str(counts.failed))
    table.add_row("Not found", str(counts.not_found))
    table.add_row("Attorney-represented", str(counts.had_attorney))
    table.add_row("Created", _format_ts(job.created_at))
    table.add_row("Completed", _format_ts(job.completed_at))
    if job.archived:
        table.add_row("Archived", _format_ts(job.archived_at))
    if job.error_message:
        table.add_row("Error", job.error_message)
    return table


def _render_results_table(job: Job) -> Table:
    table = Table(title="Results", box=box.SIMPLE_HEAD)
    table.add_column("Serial", style="cyan", no_wrap=True)
    table.add_column("Status", style="magenta")
    table.add_column("Mark")
    table.add_column("Owner")
    table.add_column("Email")
    table.add_column("Error", style="red", overflow="fold")
    for result in job.ordered_results():
        table.add_row(
            result.identifier,
            result.status.value,
            result.mark_text or "-",
            result.owner_name or "-",
            result.owner_email or "-",
            result.error_message or "",
        )
    return table


def _wait_for_job(state: AppState, job_id: str) -> Job:
    """Run the dispatcher in-process and poll the job until it is terminal."""

    service = state.service
    config = service.config
    job = service.get_status(job_id)
    if service.is_queue_paused():
        console.print("Queue is paused; run `resume` to process it.", style="yellow")
        return job
    progress = ProgressReporter(enabled=config.enable_progress_bar)
    progress.start(job.counts.total, label=job_id[:8])
    service.dispatcher.start()
    try:
        while True:
            job = service.get_status(job_id)
            progress.update(job.counts, job.status.value)
            if job.status.is_terminal:
                return job
            time.sleep(config.poll_interval_seconds)
    finally:
        progress.close()
        service.dispatcher.stop()


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging.", is_flag=True),
) -> None:
    ctx.obj = build_state(verbose)


@app.command("submit", help="Create a job from a file of serial numbers.")
def submit(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="One serial number per line."),
    wait: bool = typer.Option(False, "--wait", help="Process the job now and wait for it.", is_flag=True),
) -> None:
    state = _get_state(ctx)
    identifiers = read_identifier_file(file)
    with _handle_errors():
        job_id = state.service.submit(identifiers)
        console.print(f"Submitted job {job_id} with {len(identifiers)} identifiers.", style="green")
        if wait:
            job = _wait_for_job(state, job_id)
            console.print(_render_job_detail(job))


@app.command("status", help="Show progress for one job.")
def status(
    ctx: typer.Context,
    job_id: str = typer.Argument(...),
    results: bool = typer.Option(False, "--results", help="Also list results so far.", is_flag=True),
) -> None:
    state = _get_state(ctx)
    with _handle_errors():
        job = state.service.get_status(job_id, include_results=results)
    console.print(_render_job_detail(job))
    if results:
        console.print(_render_results_table(job))


@app.command("jobs", help="List jobs, optionally filtered by status.")
def jobs(
    ctx: typer.Context,
    status_filter: Optional[JobStatus] = typer.Option(None, "--status", help="Only jobs in this status."),
    archived: bool = typer.Option(False, "--archived", help="List archived jobs instead.", is_flag=True),
) -> None:
    state = _get_state(ctx)
    if archived:
        found = [
            job for job in state.service.list_archived_jobs()
            if status_filter is None or job.status is status_filter
        ]
    else:
        found = state.service.list_jobs(status_filter)
    if not found:
        console.print("No jobs found.", style="yellow")
        raise typer.Exit(code=0)
    console.print(_render_jobs_table(found))


@app.command("cancel", help="Cancel a pending or processing job.")
def cancel(ctx: typer.Context, job_id: str = typer.Argument(...)) -> None:
    state = _get_state(ctx)
    with _handle_errors():
        job = state.service.cancel(job_id)
    console.print(f"Job {job.id} is {job.status.value}.", style="yellow")


@app.command("remove", help="Delete a finished job and its results.")
def remove(ctx: typer.Context, job_id: str = typer.Argument(...)) -> None:
    state = _get_state(ctx)
    with _handle_errors():
        state.service.remove_job(job_id)
    console.print(f"Removed job {job_id}.", style="green")


@app.command("archive", help="Hide a completed job from the job list.")
def archive(ctx: typer.Context, job_id: str = typer.Argument(...)) -> None:
    state = _get_state(ctx)
    with _handle_errors():
        job = state.service.archive_job(job_id)
    console.print(f"Archived job {job.id}.", style="green")


@app.command("unarchive", help="Return an archived job to the job list.")
def unarchive(ctx: typer.Context, job_id: str = typer.Argument(...)) -> None:
    state = _get_state(ctx)
    with _handle_errors():
        job = state.service.unarchive_job(job_id)
    console.print(f"Unarchived job {job.id}.", style="green")


@app.command("pause", help="Stop claiming new work; running items finish.")
def pause(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    with _handle_errors():
        state.service.pause_queue()
    console.print("Queue paused.", style="yellow")


@app.command("resume", help="Resume claiming work after a pause.")
def resume(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    with _handle_errors():
        state.service.resume_queue()
    console.print("Queue resumed.", style="green")


@app.command("retry", help="Re-queue identifiers whose last attempt ended in error.")
def retry(
    ctx: typer.Context,
    job_id: str = typer.Argument(...),
    wait: bool = typer.Option(False, "--wait", help="Process the retried items now.", is_flag=True),
) -> None:
    state = _get_state(ctx)
    with _handle_errors():
        reset = state.service.retry_failed(job_id)
        if not reset:
            console.print("No failed identifiers to retry.", style="yellow")
            return
        console.print(f"Re-queued {reset} identifiers.", style="green")
        if wait:
            console.print(_render_job_detail(_wait_for_job(state, job_id)))


@app.command("export", help="Write job results to CSV, JSON lines or XLSX.")
def export(
    ctx: typer.Context,
    job_id: str = typer.Argument(...),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Destination file."),
    fmt: ExportFormat = typer.Option(ExportFormat.CSV, "--format", "-f", help="csv, json or xlsx."),
    partial: bool = typer.Option(False, "--partial", help="Allow exporting an unfinished job.", is_flag=True),
    include_filtered: bool = typer.Option(
        False, "--include-filtered", help="Keep attorney-represented filings.", is_flag=True
    ),
) -> None:
    state = _get_state(ctx)
    path = output or state.service.default_report_path(job_id, fmt)
    with _handle_errors():
        rows = state.service.write_report(
            job_id, path, fmt, include_filtered=include_filtered, partial=partial
        )
    console.print(f"Wrote {rows} rows to {path}", style="green")


@app.command("serve", help="Run the dispatcher and housekeeping until interrupted.")
def serve(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    service = state.service
    storage = service.config.storage
    service.dispatcher.start()
    state.scheduler.schedule_cleanup(
        service.cleanup_old_jobs, interval_minutes=storage.cleanup_interval_minutes
    )
    state.scheduler.start()
    info = service.processing_info()
    console.print(
        f"Dispatcher running: {info['requests_per_minute']} requests/min, "
        f"{info['worker_concurrency']} workers. Press Ctrl+C to stop.",
        style="green",
    )
    for entry in state.scheduler.list_jobs():
        console.print(f"Scheduled {entry['id']}, next run {_format_ts(entry['next_run_time'])}", style="dim")
    if service.is_queue_paused():
        console.print("Queue is paused; run `resume` to start claiming work.", style="yellow")
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        console.print("Stopping…", style="yellow")
    finally:
        state.scheduler.remove_cleanup()
        state.scheduler.shutdown()
        service.dispatcher.stop()
        service.close()


@app.command("cleanup", help="Delete finished jobs older than the retention period.")
def cleanup(
    ctx: typer.Context,
    older_than: Optional[float] = typer.Option(None, "--older-than", help="Age in hours."),
) -> None:
    state = _get_state(ctx)
    with _handle_errors():
        removed = state.service.cleanup_old_jobs(older_than)
    console.print(f"Removed {removed} jobs.", style="green")


@app.command("health", help="Check that the TSDR API is reachable with the configured key.")
def health(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    result = state.service.health_check()
    console.print(result.message, style="green" if result.ok else "red")
    if not result.ok:
        raise typer.Exit(code=1)


@app.command("info", help="Show throughput settings and queue statistics.")
def info(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    table = Table(title="Processing", box=box.MINIMAL_DOUBLE_HEAD, show_header=False)
    table.add_column("Setting", style="dim")
    table.add_column("Value", style="cyan")
    for key, value in state.service.processing_info().items():
        table.add_row(key, str(value))
    console.print(table)
    stats = state.service.queue_stats()
    console.print(json.dumps(stats, indent=2, default=str))


@app.command("log", help="Show the latest lines of the harvester log.")
def log(
    errors: bool = typer.Option(False, "--errors", help="Read error.log instead.", is_flag=True),
    lines: int = typer.Option(50, "--lines", "-n", help="Number of lines."),
) -> None:
    path = default_log_dir() / ("error.log" if errors else "harvester.log")
    content = tail_log(path, lines)
    if not content:
        console.print(f"No log entries in {path}", style="yellow")
        raise typer.Exit(code=0)
    for line in content:
        console.print(line.rstrip("\n"), markup=False, highlight=False)


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
