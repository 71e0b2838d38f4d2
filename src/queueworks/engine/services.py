"""Use-case services for the job queue: enqueue and operator actions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from queueworks.engine.definitions import Definitions
from queueworks.engine.errors import DefinitionError
from queueworks.engine.models import JobCreate, JobFilter, JobStatus, JobView
from queueworks.engine.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EnqueueJob:
    """High-level command to enqueue a task or workflow job."""

    task_slug: str | None = None
    workflow_slug: str | None = None
    input: dict[str, Any] = field(default_factory=dict)
    queue: str | None = None
    wait_until: datetime | None = None
    meta: dict[str, Any] = field(default_factory=dict)


class JobsService:
    """Validates job requests against definitions before touching the store."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        definitions: Definitions | None = None,
        default_queue: str = "default",
    ) -> None:
        self.repository = repository
        self.definitions = definitions
        self.default_queue = default_queue

    def enqueue(self, command: EnqueueJob) -> JobView:
        """Insert a queued job; unknown identifiers raise ``DefinitionError``."""

        if self.definitions is None:
            raise DefinitionError("Enqueue needs loaded definitions.")
        definition = self.definitions.resolve(
            task_slug=command.task_slug,
            workflow_slug=command.workflow_slug,
        )
        job = self.repository.insert(
            JobCreate(
                queue=command.queue or definition.queue or self.default_queue,
                input=dict(command.input),
                task_slug=command.task_slug,
                workflow_slug=command.workflow_slug,
                wait_until=command.wait_until,
                meta=dict(command.meta),
            ),
        )
        logger.info(
            "Enqueued job %s (%s %s, queue=%s)",
            job.job_id,
            definition.kind.value,
            definition.slug,
            job.queue,
        )
        return job

    def cancel(self, job_id: str) -> JobView:
        job = self.repository.cancel_job(job_id=job_id)
        logger.info("Canceled job %s", job_id)
        return job

    def retry(self, job_id: str) -> JobView:
        job = self.repository.retry_job(job_id=job_id)
        logger.info("Re-queued job %s", job_id)
        return job

    def prune(self, *, older_than: timedelta, include_failed: bool = False) -> dict[str, int]:
        """Delete finished jobs older than ``older_than``; returns counts per status."""

        cutoff = self.repository.clock() - older_than
        statuses = [JobStatus.COMPLETED, JobStatus.CANCELED]
        if include_failed:
            statuses.append(JobStatus.FAILED)
        deleted = {
            status.value: self.repository.delete_many(
                JobFilter(status=status, finished_before=cutoff),
            )
            for status in statuses
        }
        logger.info("Pruned jobs older than %s: %s", cutoff.isoformat(), deleted)
        return deleted
