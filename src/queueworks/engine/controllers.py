"""Controllers for job queue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from queueworks.config import Settings
from queueworks.engine.definitions import Definitions
from queueworks.engine.loader import load_definitions
from queueworks.engine.metrics import build_job_metrics, render_stats_lines
from queueworks.engine.models import JobFilter, JobStatus
from queueworks.engine.queues import QueueCoordinator, RunRequest
from queueworks.engine.repository import JobRepository
from queueworks.engine.runner import JobRunner
from queueworks.engine.scheduler import Scheduler
from queueworks.engine.services import EnqueueJob, JobsService
from queueworks.engine.worker import QueueWorker
from queueworks.storage.common import from_iso, utc_now


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for job enqueue."""

    db_path: Path | None
    definitions: str | None
    task_slug: str | None
    workflow_slug: str | None
    input_json: str | None
    queue: str | None
    wait_until: str | None


@dataclass(slots=True)
class RunCommand:
    """CLI input for one run batch."""

    db_path: Path | None
    definitions: str | None
    queue: str | None
    limit: int | None
    sequential: bool | None


@dataclass(slots=True)
class ScheduleTickCommand:
    """CLI input for one scheduler tick."""

    db_path: Path | None
    definitions: str | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for the long-running worker loop."""

    db_path: Path | None
    definitions: str | None
    queue: str | None
    limit: int | None
    max_batches: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    queue: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectJobCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class MutateJobCommand:
    """CLI input for retry/cancel operations."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class PruneCommand:
    """CLI input for finished job cleanup."""

    db_path: Path | None
    hours: int
    include_failed: bool


@dataclass(slots=True)
class StatsCommand:
    """CLI input for queue health stats."""

    db_path: Path | None
    hours: int


@dataclass(slots=True)
class DefinitionsCommand:
    """CLI input for registered definitions listing."""

    definitions: str | None


class JobsCliController:
    """Coordinates enqueue, run, schedule and inspection CLI operations."""

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = _settings(command.db_path)
        definitions = _definitions(settings, command.definitions)
        with _repository(settings) as repository:
            service = JobsService(
                repository=repository,
                definitions=definitions,
                default_queue=settings.runner.default_queue,
            )
            job = service.enqueue(
                EnqueueJob(
                    task_slug=command.task_slug,
                    workflow_slug=command.workflow_slug,
                    input=_parse_input(command.input_json),
                    queue=command.queue,
                    wait_until=_parse_wait_until(command.wait_until),
                ),
            )

        wait = job.wait_until.isoformat() if job.wait_until is not None else "-"
        return [
            "Job enqueued: "
            f"job_id={job.job_id} {job.kind.value}={job.slug} queue={job.queue} "
            f"status={job.status.value} wait_until={wait}",
        ]

    def run(self, command: RunCommand) -> list[str]:
        """Process one batch of due jobs."""

        settings = _settings(command.db_path)
        definitions = _definitions(settings, command.definitions)
        request = RunRequest(
            queue=command.queue or settings.runner.default_queue,
            limit=command.limit or settings.runner.run_limit,
            sequential=(
                settings.runner.sequential if command.sequential is None else command.sequential
            ),
        )
        with _repository(settings) as repository:
            summary = _coordinator(settings, repository, definitions).run(request)

        lines = [
            "Run summary: "
            f"queue={request.queue} claimed={summary.claimed} "
            f"succeeded={summary.succeeded} retried={summary.retried} "
            f"failed={summary.failed} canceled={summary.canceled} lost={summary.lost} "
            f"stale_recovered={summary.stale_recovered}",
        ]
        for outcome in summary.outcomes:
            line = f"  job_id={outcome.job_id} outcome={outcome.status.value}"
            if outcome.wait_until is not None:
                line += f" wait_until={outcome.wait_until.isoformat()}"
            if outcome.error is not None:
                line += f" error={outcome.error.get('message', '-')}"
            lines.append(line)
        return lines

    def schedule_tick(self, command: ScheduleTickCommand) -> list[str]:
        settings = _settings(command.db_path)
        definitions = _definitions(settings, command.definitions)
        with _repository(settings) as repository:
            summary = Scheduler(
                store=repository,
                definitions=definitions,
                default_queue=settings.runner.default_queue,
            ).tick()

        lines = [
            "Schedule tick: "
            f"evaluated={summary.evaluated} scheduled={summary.scheduled} "
            f"vetoed={summary.vetoed} hook_failed={summary.hook_failed} "
            f"skipped={summary.skipped}",
        ]
        for outcome in summary.outcomes:
            lines.append(
                f"  {outcome.slug}#{outcome.schedule_index} slot={outcome.slot.isoformat()} "
                f"status={outcome.status.value} job_id={outcome.job_id or '-'}",
            )
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        definitions = _definitions(settings, command.definitions)
        request = RunRequest(
            queue=command.queue or settings.runner.default_queue,
            limit=command.limit or settings.runner.run_limit,
            sequential=settings.runner.sequential,
        )
        with _repository(settings) as repository:
            worker = QueueWorker(
                coordinator=_coordinator(settings, repository, definitions),
                scheduler=Scheduler(
                    store=repository,
                    definitions=definitions,
                    default_queue=settings.runner.default_queue,
                ),
                poll_interval_seconds=settings.runner.poll_interval_seconds,
            )
            summary = worker.run_loop(
                request,
                max_batches=command.max_batches,
                max_idle_polls=command.max_idle_polls,
            )

        return [
            "Worker summary: "
            f"batches={summary.batches} processed={summary.processed} "
            f"succeeded={summary.succeeded} retried={summary.retried} "
            f"failed={summary.failed} canceled={summary.canceled} "
            f"scheduled={summary.scheduled} idle_polls={summary.idle_polls} "
            f"stop_signal={summary.stop_signal or '-'}",
        ]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            jobs = repository.query(
                JobFilter(
                    queue=command.queue,
                    status=_parse_status(command.status),
                    limit=command.limit,
                ),
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                "  "
                f"{job.job_id} {job.kind.value}={job.slug} queue={job.queue} "
                f"status={job.status.value} attempts={job.total_attempts} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: InspectJobCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(job_id=command.job_id)
        if details is None:
            raise ValueError(f"Job not found: {command.job_id}")

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Definition: {job.kind.value}={job.slug}",
            f"Queue: {job.queue}",
            f"Status: {job.status.value}",
            f"Attempts: {job.total_attempts}",
            f"Wait until: {job.wait_until.isoformat() if job.wait_until else '-'}",
            f"Completed at: {job.completed_at.isoformat() if job.completed_at else '-'}",
            f"Canceled at: {job.canceled_at.isoformat() if job.canceled_at else '-'}",
            f"Input: {_dump(job.input)}",
            f"Error: {_dump(job.error) if job.error else '-'}",
            f"Meta: {_dump(job.meta) if job.meta else '-'}",
            f"Steps: {len(job.task_status)}",
        ]
        for step_id, status in job.task_status.items():
            lines.append(
                f"  step={step_id} task={status.task_slug or 'inline'} "
                f"complete={'yes' if status.complete else 'no'} attempts={status.attempts}",
            )
        lines.append(f"Log entries: {len(job.log)}")
        for entry in job.log:
            lines.append(
                f"  {entry.started_at.isoformat()} step={entry.step_id} "
                f"status={entry.status.value} "
                f"error={entry.error.get('message', '-') if entry.error else '-'}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(f"  {event.created_at.isoformat()} {event.event_type}")
        return lines

    def cancel_job(self, command: MutateJobCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            JobsService(repository=repository).cancel(command.job_id)
        return [f"Job canceled: {command.job_id}"]

    def retry_job(self, command: MutateJobCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            JobsService(repository=repository).retry(command.job_id)
        return [f"Job re-queued: {command.job_id}"]

    def prune(self, command: PruneCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            deleted = JobsService(repository=repository).prune(
                older_than=timedelta(hours=command.hours),
                include_failed=command.include_failed,
            )
        details = " ".join(f"{status}={count}" for status, count in deleted.items())
        return [f"Pruned jobs older than {command.hours}h: total={sum(deleted.values())} {details}"]

    def stats(self, command: StatsCommand) -> list[str]:
        """Show operator-facing queue health metrics."""

        settings = _settings(command.db_path)
        cutoff = utc_now() - timedelta(hours=max(1, command.hours))
        with _repository(settings) as repository:
            queue_status_counts = repository.count_by_queue_status()
            window_events = repository.list_events(since=cutoff)

        snapshot = build_job_metrics(
            queue_status_counts=queue_status_counts,
            window_events=window_events,
        )
        return render_stats_lines(snapshot=snapshot, hours=command.hours)

    def list_definitions(self, command: DefinitionsCommand) -> list[str]:
        settings = Settings.from_env()
        definitions = _definitions(settings, command.definitions)
        lines = [f"Tasks: {len(definitions.tasks)}"]
        for task in definitions.tasks.values():
            lines.append(
                f"  {task.slug} queue={task.queue or '-'} "
                f"attempts={task.retries.attempts if task.retries else 1}"
                + _fmt_schedules(task.schedules),
            )
        lines.append(f"Workflows: {len(definitions.workflows)}")
        for workflow in definitions.workflows.values():
            shape = (
                "steps=" + ",".join(step.step_id for step in workflow.steps)
                if workflow.is_static
                else "handler"
            )
            lines.append(
                f"  {workflow.slug} queue={workflow.queue or '-'} {shape}"
                + _fmt_schedules(workflow.schedules),
            )
        return lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _definitions(settings: Settings, override: str | None) -> Definitions:
    return load_definitions(override or settings.definitions)


def _coordinator(
    settings: Settings,
    repository: JobRepository,
    definitions: Definitions,
) -> QueueCoordinator:
    runner = JobRunner(
        store=repository,
        definitions=definitions,
        worker_id=settings.runner.worker_id,
        job_timeout_seconds=settings.runner.job_timeout_seconds,
        stale_after_seconds=settings.runner.stale_after_seconds,
        delete_on_complete=settings.runner.delete_on_complete,
    )
    return QueueCoordinator(
        runner=runner,
        queues=settings.queues,
        max_parallel=settings.runner.max_parallel,
    )


def _parse_input(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    try:
        payload = json.loads(value)
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid --input JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError("--input must be a JSON object.")
    return payload


def _parse_wait_until(value: str | None) -> datetime | None:
    """Accept an ISO timestamp (UTC when naive) or ``+SECONDS`` relative to now."""

    if not value:
        return None
    raw = value.strip()
    try:
        if raw.startswith("+"):
            return utc_now() + timedelta(seconds=float(raw[1:]))
        return from_iso(raw)
    except ValueError as error:
        raise ValueError(
            f"Invalid --wait-until value {value!r}: expected ISO timestamp or +SECONDS.",
        ) from error


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


def _fmt_schedules(schedules: tuple[Any, ...]) -> str:
    if not schedules:
        return ""
    return " cron=" + ";".join(schedule.cron for schedule in schedules)


def _dump(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.busy_timeout_ms,
    )
    try:
        repository.init_schema()
        yield repository
    finally:
        repository.close()
