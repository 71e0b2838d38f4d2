from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any

import allure
import pytest

from queueworks.engine.definitions import Definitions, TaskRegistry, WorkflowRegistry
from queueworks.engine.errors import DefinitionError
from queueworks.engine.models import DefinitionKind, JobFilter, JobStatus
from queueworks.engine.repository import JobRepository
from queueworks.engine.services import EnqueueJob, JobsService

if TYPE_CHECKING:
    from conftest import FakeClock

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Operator Actions"),
]


def _noop(task_input: dict[str, Any], _: Any) -> None:
    return None


def _service(repository: JobRepository) -> JobsService:
    tasks = TaskRegistry()
    tasks.register("send-email", _noop, queue="emails")
    tasks.register("plain", _noop)
    workflows = WorkflowRegistry()
    workflows.register("onboarding", lambda *_: None)
    return JobsService(
        repository=repository,
        definitions=Definitions(tasks=tasks, workflows=workflows),
        default_queue="main",
    )


def test_enqueue_resolves_queue_from_definition(repository: JobRepository) -> None:
    service = _service(repository)

    routed = service.enqueue(EnqueueJob(task_slug="send-email", input={"to": "a@b.c"}))
    fallback = service.enqueue(EnqueueJob(task_slug="plain"))
    explicit = service.enqueue(EnqueueJob(workflow_slug="onboarding", queue="vip"))

    assert routed.queue == "emails"
    assert routed.input == {"to": "a@b.c"}
    assert fallback.queue == "main"
    assert explicit.queue == "vip"
    assert explicit.kind == DefinitionKind.WORKFLOW


def test_enqueue_rejects_unknown_identifier(repository: JobRepository) -> None:
    service = _service(repository)

    with pytest.raises(DefinitionError, match="Unknown task"):
        service.enqueue(EnqueueJob(task_slug="missing"))
    with pytest.raises(DefinitionError, match="exactly one"):
        service.enqueue(EnqueueJob(task_slug="plain", workflow_slug="onboarding"))
    assert repository.query(JobFilter()) == []


def test_enqueue_without_definitions_is_rejected(repository: JobRepository) -> None:
    with pytest.raises(DefinitionError, match="needs loaded definitions"):
        JobsService(repository=repository).enqueue(EnqueueJob(task_slug="plain"))


def test_cancel_then_retry_round_trip(repository: JobRepository) -> None:
    service = _service(repository)
    job = service.enqueue(EnqueueJob(task_slug="plain"))

    assert service.cancel(job.job_id).status == JobStatus.CANCELED
    assert service.retry(job.job_id).status == JobStatus.QUEUED
    with pytest.raises(RuntimeError, match="Job not found"):
        service.cancel("missing")


def test_prune_deletes_old_finished_jobs(repository: JobRepository, clock: FakeClock) -> None:
    service = _service(repository)
    completed = service.enqueue(EnqueueJob(task_slug="plain"))
    repository.update(completed.job_id, {"completed_at": clock()})
    failed = service.enqueue(EnqueueJob(task_slug="plain"))
    repository.update(failed.job_id, {"has_error": True})
    canceled = service.enqueue(EnqueueJob(task_slug="plain"))
    service.cancel(canceled.job_id)
    queued = service.enqueue(EnqueueJob(task_slug="plain"))

    assert service.prune(older_than=timedelta(hours=1)) == {"completed": 0, "canceled": 0}

    clock.advance(2 * 3600)
    deleted = service.prune(older_than=timedelta(hours=1))

    assert deleted == {"completed": 1, "canceled": 1}
    remaining = {job.job_id for job in repository.query(JobFilter())}
    assert remaining == {failed.job_id, queued.job_id}
    assert service.prune(older_than=timedelta(hours=1), include_failed=True) == {
        "completed": 0,
        "canceled": 0,
        "failed": 1,
    }
