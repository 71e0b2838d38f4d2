"""CLI entrypoint for queueworks."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click
from rich.logging import RichHandler

from queueworks import __version__
from queueworks.engine.controllers import (
    DefinitionsCommand,
    EnqueueCommand,
    InspectJobCommand,
    JobsCliController,
    ListJobsCommand,
    MutateJobCommand,
    PruneCommand,
    RunCommand,
    ScheduleTickCommand,
    StatsCommand,
    WorkerCommand,
)
from queueworks.engine.errors import QueueworksError
from queueworks.engine.models import JobStatus

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
definitions_option = click.option(
    "--definitions",
    default=None,
    help="Definitions bundle as `package.module:attribute` (default: QUEUEWORKS_DEFINITIONS).",
)


@click.group()
@click.version_option(version=__version__, prog_name="queueworks")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Console log level.",
)
def queueworks(log_level: str) -> None:
    """Background job, task and workflow queue."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


@queueworks.command("enqueue")
@db_path_option
@definitions_option
@click.option("--task", "task_slug", default=None, help="Task identifier.")
@click.option("--workflow", "workflow_slug", default=None, help="Workflow identifier.")
@click.option("--input", "input_json", default=None, help="Job input as a JSON object.")
@click.option("--queue", default=None, help="Queue override.")
@click.option(
    "--wait-until",
    default=None,
    help="ISO timestamp (UTC) or +SECONDS delay before the job becomes eligible.",
)
def enqueue(  # noqa: PLR0913
    db_path: Path | None,
    definitions: str | None,
    task_slug: str | None,
    workflow_slug: str | None,
    input_json: str | None,
    queue: str | None,
    wait_until: str | None,
) -> None:
    """Enqueue one task or workflow job."""

    if (task_slug is None) == (workflow_slug is None):
        raise click.UsageError("Pass exactly one of --task or --workflow.")
    with _cli_errors():
        _emit_lines(
            JOBS_CONTROLLER.enqueue(
                EnqueueCommand(
                    db_path=db_path,
                    definitions=definitions,
                    task_slug=task_slug,
                    workflow_slug=workflow_slug,
                    input_json=input_json,
                    queue=queue,
                    wait_until=wait_until,
                ),
            ),
        )


@queueworks.command("run")
@db_path_option
@definitions_option
@click.option("--queue", default=None, help="Queue name, or `all` for every queue with due jobs.")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max jobs to claim.")
@click.option(
    "--sequential/--parallel",
    default=None,
    help="Run claimed jobs one at a time (default: QUEUEWORKS_SEQUENTIAL).",
)
def run(
    db_path: Path | None,
    definitions: str | None,
    queue: str | None,
    limit: int | None,
    sequential: bool | None,
) -> None:
    """Process one batch of due jobs."""

    with _cli_errors():
        _emit_lines(
            JOBS_CONTROLLER.run(
                RunCommand(
                    db_path=db_path,
                    definitions=definitions,
                    queue=queue,
                    limit=limit,
                    sequential=sequential,
                ),
            ),
        )


@queueworks.command("schedule-tick")
@db_path_option
@definitions_option
def schedule_tick(db_path: Path | None, definitions: str | None) -> None:
    """Evaluate every cron schedule once."""

    with _cli_errors():
        _emit_lines(
            JOBS_CONTROLLER.schedule_tick(
                ScheduleTickCommand(db_path=db_path, definitions=definitions),
            ),
        )


@queueworks.command("worker")
@db_path_option
@definitions_option
@click.option("--queue", default=None, help="Queue name, or `all`.")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max jobs per batch.")
@click.option(
    "--max-batches",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many batches.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=0),
    default=1,
    show_default=True,
    help="Exit after this many consecutive empty polls (0 = run until stopped).",
)
def worker(  # noqa: PLR0913
    db_path: Path | None,
    definitions: str | None,
    queue: str | None,
    limit: int | None,
    max_batches: int | None,
    max_idle_polls: int,
) -> None:
    """Run schedule ticks and batches until idle or stopped (SIGINT/SIGTERM)."""

    with _cli_errors():
        _emit_lines(
            JOBS_CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    definitions=definitions,
                    queue=queue,
                    limit=limit,
                    max_batches=max_batches,
                    max_idle_polls=max_idle_polls,
                ),
            ),
        )


@queueworks.command("jobs")
@db_path_option
@click.option("--queue", default=None, help="Queue filter.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Status filter.",
)
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
def list_jobs(db_path: Path | None, queue: str | None, status: str | None, limit: int) -> None:
    """List jobs, newest first."""

    with _cli_errors():
        _emit_lines(
            JOBS_CONTROLLER.list_jobs(
                ListJobsCommand(db_path=db_path, queue=queue, status=status, limit=limit),
            ),
        )


@queueworks.command("inspect")
@db_path_option
@click.option("--job-id", required=True, help="Job ID.")
def inspect_job(db_path: Path | None, job_id: str) -> None:
    """Show one job with its step status, log and events."""

    with _cli_errors():
        _emit_lines(
            JOBS_CONTROLLER.inspect_job(InspectJobCommand(db_path=db_path, job_id=job_id)),
        )


@queueworks.command("cancel")
@db_path_option
@click.option("--job-id", required=True, help="Job ID.")
def cancel_job(db_path: Path | None, job_id: str) -> None:
    """Set the cancellation marker on a queued or running job."""

    with _cli_errors():
        _emit_lines(JOBS_CONTROLLER.cancel_job(MutateJobCommand(db_path=db_path, job_id=job_id)))


@queueworks.command("retry")
@db_path_option
@click.option("--job-id", required=True, help="Job ID.")
def retry_job(db_path: Path | None, job_id: str) -> None:
    """Re-queue a failed or canceled job; completed steps are kept."""

    with _cli_errors():
        _emit_lines(JOBS_CONTROLLER.retry_job(MutateJobCommand(db_path=db_path, job_id=job_id)))


@queueworks.command("prune")
@db_path_option
@click.option(
    "--hours",
    type=click.IntRange(min=0),
    default=168,
    show_default=True,
    help="Delete finished jobs older than this many hours.",
)
@click.option("--include-failed", is_flag=True, default=False, help="Also delete failed jobs.")
def prune(db_path: Path | None, hours: int, include_failed: bool) -> None:
    """Delete completed and canceled jobs."""

    with _cli_errors():
        _emit_lines(
            JOBS_CONTROLLER.prune(
                PruneCommand(db_path=db_path, hours=hours, include_failed=include_failed),
            ),
        )


@queueworks.command("stats")
@db_path_option
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for event aggregation.",
)
def stats(db_path: Path | None, hours: int) -> None:
    """Show queue health and event counters."""

    with _cli_errors():
        _emit_lines(JOBS_CONTROLLER.stats(StatsCommand(db_path=db_path, hours=hours)))


@queueworks.command("definitions")
@definitions_option
def list_definitions(definitions: str | None) -> None:
    """List registered tasks and workflows."""

    with _cli_errors():
        _emit_lines(JOBS_CONTROLLER.list_definitions(DefinitionsCommand(definitions=definitions)))


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (QueueworksError, ValueError, RuntimeError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    queueworks()
