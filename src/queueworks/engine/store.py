"""Job Store contract: the engine's only persistence boundary."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Protocol

from queueworks.engine.models import (
    ClaimToken,
    JobCreate,
    JobFilter,
    JobView,
    QueueOrder,
)

PATCHABLE_FIELDS: frozenset[str] = frozenset(
    {
        "wait_until",
        "processing",
        "processing_started_at",
        "worker_id",
        "total_attempts",
        "has_error",
        "error",
        "completed_at",
        "canceled_at",
        "log",
        "task_status",
        "meta",
    },
)


class JobStore(Protocol):
    """Operations the runner, scheduler and coordinator rely on.

    ``claim`` must be atomic: it returns only jobs this caller transitioned to
    ``processing=True``. ``update`` with a ``claim`` token applies only while that
    exact claim still holds the job. Connectivity failures surface as
    ``StoreUnavailableError``.
    """

    def insert(self, payload: JobCreate) -> JobView: ...

    def claim(
        self,
        *,
        queue: str | None,
        now: datetime,
        order: QueueOrder,
        limit: int,
        worker_id: str,
    ) -> list[JobView]: ...

    def update(
        self,
        job_id: str,
        patch: Mapping[str, Any],
        *,
        require_processing: bool | None = None,
        claim: ClaimToken | None = None,
        event_type: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> bool: ...

    def query(self, job_filter: JobFilter) -> list[JobView]: ...

    def delete_many(self, job_filter: JobFilter) -> int: ...

    def get_job(self, job_id: str) -> JobView | None: ...

    def is_canceled(self, job_id: str) -> bool: ...

    def eligible_queues(self, *, now: datetime) -> list[str]: ...

    def recover_stale_jobs(self, *, stale_before: datetime) -> list[str]: ...

    def last_schedule_slot(
        self,
        *,
        kind: str,
        slug: str,
        schedule_index: int,
    ) -> datetime | None: ...

    def record_schedule_slot(
        self,
        *,
        kind: str,
        slug: str,
        schedule_index: int,
        slot: datetime,
    ) -> bool: ...

    def insert_scheduled(
        self,
        *,
        kind: str,
        slug: str,
        schedule_index: int,
        slot: datetime,
        payload: JobCreate,
    ) -> JobView | None: ...

    def count_jobs(self, *, slug: str | None = None) -> dict[str, int]: ...

    def add_event(
        self,
        *,
        job_id: str | None,
        event_type: str,
        queue: str | None = None,
        slug: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None: ...
