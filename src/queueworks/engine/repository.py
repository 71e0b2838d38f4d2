"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, func, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import Session, col, select

from queueworks.engine.errors import ClaimConflictError, StoreUnavailableError
from queueworks.engine.models import (
    ClaimToken,
    JobCreate,
    JobDetails,
    JobEventView,
    JobFilter,
    JobLogEntry,
    JobStatus,
    JobView,
    QueueOrder,
    StepStatus,
)
from queueworks.engine.store import PATCHABLE_FIELDS
from queueworks.storage.alembic_runner import upgrade_head
from queueworks.storage.common import (
    build_sqlite_engine,
    dumps_json,
    loads_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from queueworks.storage.sqlmodel_models import JobEventRow, JobRow, ScheduleSlotRow

logger = logging.getLogger(__name__)

_ORDER_COLUMNS = {
    "created_at": JobRow.created_at,
    "updated_at": JobRow.updated_at,
    "wait_until": JobRow.wait_until,
    "total_attempts": JobRow.total_attempts,
}


class JobRepository:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        with _store_errors():
            upgrade_head(self.db_path)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with _store_errors(), Session(self.engine) as session:
            yield session

    def insert(self, payload: JobCreate) -> JobView:
        """Create a queued job."""

        now = to_db_datetime(self.clock())
        job_id = payload.job_id or str(uuid4())
        row = JobRow(
            job_id=job_id,
            queue=payload.queue,
            task_slug=payload.task_slug,
            workflow_slug=payload.workflow_slug,
            input_json=dumps_json(payload.input),
            wait_until=to_db_datetime(payload.wait_until) if payload.wait_until else None,
            meta_json=dumps_json(payload.meta),
            created_at=now,
            updated_at=now,
        )
        with self._session() as session:
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                queue=payload.queue,
                slug=payload.task_slug or payload.workflow_slug,
                details=_enqueue_details(payload),
            )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ValueError(f"Job already exists: {job_id}") from error
            session.refresh(row)
            return _to_job_view(row)

    def claim(
        self,
        *,
        queue: str | None,
        now: datetime,
        order: QueueOrder,
        limit: int,
        worker_id: str,
    ) -> list[JobView]:
        """Claim up to ``limit`` eligible jobs; lost races are skipped."""

        if limit <= 0:
            return []
        claimed: list[JobView] = []
        for job_id in self._candidate_ids(queue=queue, now=now, order=order, limit=limit):
            try:
                claimed.append(self.try_claim(job_id=job_id, now=now, worker_id=worker_id))
            except ClaimConflictError:
                logger.debug("Lost claim race for job %s", job_id)
        return claimed

    def try_claim(self, *, job_id: str, now: datetime, worker_id: str) -> JobView:
        """Atomically flip one eligible job to ``processing=True``."""

        db_now = to_db_datetime(self.clock())
        with self._session() as session:
            result = session.exec(
                sa_update(JobRow)
                .where(col(JobRow.job_id) == job_id, _eligible_clause(now))
                .values(
                    processing=True,
                    processing_started_at=db_now,
                    worker_id=worker_id,
                    updated_at=db_now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ClaimConflictError(job_id)

            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="claimed",
                queue=row.queue,
                slug=row.task_slug or row.workflow_slug,
                details={"worker_id": worker_id, "attempt": row.total_attempts + 1},
            )
            session.commit()
            return _to_job_view(row)

    def update(
        self,
        job_id: str,
        patch: Mapping[str, Any],
        *,
        require_processing: bool | None = None,
        claim: ClaimToken | None = None,
        event_type: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> bool:
        """Apply a partial update; ``False`` when the guard condition did not hold."""

        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported job patch fields: {', '.join(sorted(unknown))}")

        values = _patch_values(patch)
        values["updated_at"] = to_db_datetime(self.clock())
        conditions: list[ColumnElement[bool]] = [col(JobRow.job_id) == job_id]
        if require_processing is not None:
            conditions.append(col(JobRow.processing).is_(require_processing))
        if claim is not None:
            conditions.extend(
                [
                    col(JobRow.processing).is_(True),
                    col(JobRow.worker_id) == claim.worker_id,
                    col(JobRow.processing_started_at) == to_db_datetime(claim.claimed_at),
                ],
            )

        with self._session() as session:
            result = session.exec(sa_update(JobRow).where(*conditions).values(**values))
            if result.rowcount != 1:
                session.rollback()
                return False
            if event_type is not None:
                row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one()
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type=event_type,
                    queue=row.queue,
                    slug=row.task_slug or row.workflow_slug,
                    details=dict(details or {}),
                )
            session.commit()
            return True

    def query(self, job_filter: JobFilter) -> list[JobView]:
        """List jobs, newest first."""

        with self._session() as session:
            statement = select(JobRow).order_by(col(JobRow.created_at).desc())
            for condition in _filter_conditions(job_filter):
                statement = statement.where(condition)
            if job_filter.limit is not None:
                statement = statement.limit(job_filter.limit)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def delete_many(self, job_filter: JobFilter) -> int:
        """Delete matching jobs that no runner currently holds."""

        conditions = [*_filter_conditions(job_filter), col(JobRow.processing).is_(False)]
        with self._session() as session:
            result = session.exec(sa_delete(JobRow).where(*conditions))
            session.commit()
            return int(result.rowcount or 0)

    def get_job(self, job_id: str) -> JobView | None:
        with self._session() as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
        return _to_job_view(row) if row is not None else None

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with self._session() as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(JobEventRow)
                .where(JobEventRow.job_id == job_id)
                .order_by(col(JobEventRow.event_id).asc()),
            ).all()
        return JobDetails(
            job=_to_job_view(row),
            events=[_to_event_view(event_row) for event_row in event_rows],
        )

    def is_canceled(self, job_id: str) -> bool:
        """True when the cancellation marker is set or the record is gone."""

        with self._session() as session:
            canceled_at = session.exec(
                select(JobRow.canceled_at).where(JobRow.job_id == job_id),
            ).one_or_none()
            exists = session.exec(
                select(func.count()).select_from(JobRow).where(JobRow.job_id == job_id),
            ).one()
        return not exists or canceled_at is not None

    def eligible_queues(self, *, now: datetime) -> list[str]:
        with self._session() as session:
            rows = session.exec(
                select(JobRow.queue)
                .where(_eligible_clause(now))
                .distinct()
                .order_by(col(JobRow.queue).asc()),
            ).all()
        return list(rows)

    def recover_stale_jobs(self, *, stale_before: datetime) -> list[str]:
        """Release jobs whose runner presumably died mid-attempt."""

        db_stale_before = to_db_datetime(stale_before)
        recovered: list[str] = []
        with self._session() as session:
            stale_rows = session.exec(
                select(JobRow.job_id, JobRow.processing_started_at, JobRow.worker_id).where(
                    col(JobRow.processing).is_(True),
                    col(JobRow.processing_started_at) < db_stale_before,
                ),
            ).all()

        for job_id, started_at, worker_id in stale_rows:
            with self._session() as session:
                result = session.exec(
                    sa_update(JobRow)
                    .where(
                        col(JobRow.job_id) == job_id,
                        col(JobRow.processing).is_(True),
                        col(JobRow.processing_started_at) == started_at,
                    )
                    .values(
                        processing=False,
                        processing_started_at=None,
                        worker_id=None,
                        updated_at=to_db_datetime(self.clock()),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one()
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="stale_recovered",
                    queue=row.queue,
                    slug=row.task_slug or row.workflow_slug,
                    details={
                        "worker_id": worker_id,
                        "processing_started_at": (
                            to_utc_aware_datetime(started_at).isoformat() if started_at else None
                        ),
                    },
                )
                session.commit()
                recovered.append(job_id)
        return recovered

    def last_schedule_slot(self, *, kind: str, slug: str, schedule_index: int) -> datetime | None:
        with self._session() as session:
            row = session.get(ScheduleSlotRow, (kind, slug, schedule_index))
        return to_utc_aware_datetime(row.last_slot_at) if row is not None else None

    def record_schedule_slot(
        self,
        *,
        kind: str,
        slug: str,
        schedule_index: int,
        slot: datetime,
    ) -> bool:
        """Store a baseline slot without producing a job; ``False`` if one exists."""

        with self._session() as session:
            session.add(
                ScheduleSlotRow(
                    kind=kind,
                    slug=slug,
                    schedule_index=schedule_index,
                    last_slot_at=to_db_datetime(slot),
                    last_job_id=None,
                    updated_at=to_db_datetime(self.clock()),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def insert_scheduled(
        self,
        *,
        kind: str,
        slug: str,
        schedule_index: int,
        slot: datetime,
        payload: JobCreate,
    ) -> JobView | None:
        """Record ``slot`` as produced and insert its job in one transaction.

        Returns ``None`` when another scheduler already produced this slot.
        """

        now = to_db_datetime(self.clock())
        db_slot = to_db_datetime(slot)
        job_id = payload.job_id or str(uuid4())
        with self._session() as session:
            result = session.exec(
                sa_update(ScheduleSlotRow)
                .where(
                    col(ScheduleSlotRow.kind) == kind,
                    col(ScheduleSlotRow.slug) == slug,
                    col(ScheduleSlotRow.schedule_index) == schedule_index,
                    col(ScheduleSlotRow.last_slot_at) < db_slot,
                )
                .values(last_slot_at=db_slot, last_job_id=job_id, updated_at=now),
            )
            if result.rowcount != 1:
                existing = session.get(ScheduleSlotRow, (kind, slug, schedule_index))
                if existing is not None:
                    session.rollback()
                    return None
                session.add(
                    ScheduleSlotRow(
                        kind=kind,
                        slug=slug,
                        schedule_index=schedule_index,
                        last_slot_at=db_slot,
                        last_job_id=job_id,
                        updated_at=now,
                    ),
                )

            row = JobRow(
                job_id=job_id,
                queue=payload.queue,
                task_slug=payload.task_slug,
                workflow_slug=payload.workflow_slug,
                input_json=dumps_json(payload.input),
                wait_until=to_db_datetime(payload.wait_until) if payload.wait_until else None,
                meta_json=dumps_json(payload.meta),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="scheduled",
                queue=payload.queue,
                slug=slug,
                details={
                    **_enqueue_details(payload),
                    "schedule_index": schedule_index,
                    "slot": to_utc_aware_datetime(slot).isoformat(),
                },
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            session.refresh(row)
            return _to_job_view(row)

    def count_jobs(self, *, slug: str | None = None) -> dict[str, int]:
        """Job counts per derived status, optionally for one task/workflow."""

        counts = Counter[str]()
        for _, status in self._status_rows(slug=slug):
            counts[status.value] += 1
        return dict(counts)

    def count_by_queue_status(self) -> dict[str, dict[str, int]]:
        counts: dict[str, Counter[str]] = defaultdict(Counter)
        for queue, status in self._status_rows(slug=None):
            counts[queue][status.value] += 1
        return {queue: dict(counter) for queue, counter in sorted(counts.items())}

    def list_events(
        self,
        *,
        since: datetime | None = None,
        event_types: tuple[str, ...] | None = None,
    ) -> list[JobEventView]:
        with self._session() as session:
            statement = select(JobEventRow).order_by(col(JobEventRow.event_id).asc())
            if since is not None:
                statement = statement.where(JobEventRow.created_at >= to_db_datetime(since))
            if event_types:
                statement = statement.where(col(JobEventRow.event_type).in_(event_types))
            rows = session.exec(statement).all()
        return [_to_event_view(row) for row in rows]

    def add_event(
        self,
        *,
        job_id: str | None,
        event_type: str,
        queue: str | None = None,
        slug: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        with self._session() as session:
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                queue=queue,
                slug=slug,
                details=dict(details or {}),
            )
            session.commit()

    def cancel_job(self, *, job_id: str) -> JobView:
        """Set the cancellation marker on a queued or processing job."""

        now = to_db_datetime(self.clock())
        with self._session() as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            if row is None:
                raise RuntimeError(f"Job not found: {job_id}")
            previous = _to_job_view(row).status
            if previous not in {JobStatus.QUEUED, JobStatus.PROCESSING}:
                raise RuntimeError(f"Job cannot be canceled from status={previous.value}")

            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.canceled_at).is_(None),
                    col(JobRow.completed_at).is_(None),
                    col(JobRow.has_error).is_(False),
                )
                .values(canceled_at=now, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Job state changed concurrently while canceling; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="canceled",
                queue=row.queue,
                slug=row.task_slug or row.workflow_slug,
                details={"status_from": previous.value},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def retry_job(self, *, job_id: str) -> JobView:
        """Manual operator retry for failed/canceled jobs; completed steps are kept."""

        now = to_db_datetime(self.clock())
        with self._session() as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            if row is None:
                raise RuntimeError(f"Job not found: {job_id}")
            view = _to_job_view(row)
            if view.status not in {JobStatus.FAILED, JobStatus.CANCELED}:
                raise RuntimeError(
                    "Only failed/canceled jobs can be retried manually, "
                    f"got {view.status.value}.",
                )
            task_status = {
                step_id: StepStatus(
                    complete=status.complete,
                    output=status.output,
                    attempts=status.attempts if status.complete else 0,
                    task_slug=status.task_slug,
                )
                for step_id, status in view.task_status.items()
            }
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.processing).is_(False),
                    col(JobRow.completed_at).is_(None),
                )
                .values(
                    has_error=False,
                    error_json=None,
                    canceled_at=None,
                    total_attempts=0,
                    wait_until=None,
                    task_status_json=_dump_task_status(task_status),
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Job state changed concurrently while retrying; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="manual_retry",
                queue=row.queue,
                slug=row.task_slug or row.workflow_slug,
                details={"status_from": view.status.value},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def _candidate_ids(
        self,
        *,
        queue: str | None,
        now: datetime,
        order: QueueOrder,
        limit: int,
    ) -> list[str]:
        column = col(_ORDER_COLUMNS[order.column])
        created = col(JobRow.created_at)
        ordering = (
            (column.desc(), created.desc())
            if order.descending
            else (column.asc(), created.asc())
        )
        statement = (
            select(JobRow.job_id)
            .where(_eligible_clause(now))
            .order_by(*ordering, col(JobRow.job_id).asc())
            .limit(limit)
        )
        if queue is not None:
            statement = statement.where(JobRow.queue == queue)
        with self._session() as session:
            return list(session.exec(statement).all())

    def _status_rows(self, *, slug: str | None) -> list[tuple[str, JobStatus]]:
        statement = select(
            JobRow.queue,
            JobRow.processing,
            JobRow.has_error,
            JobRow.completed_at,
            JobRow.canceled_at,
        )
        if slug is not None:
            statement = statement.where(
                or_(col(JobRow.task_slug) == slug, col(JobRow.workflow_slug) == slug),
            )
        with self._session() as session:
            rows = session.exec(statement).all()
        return [
            (
                queue,
                _derive_status(
                    processing=processing,
                    has_error=has_error,
                    completed=completed_at is not None,
                    canceled=canceled_at is not None,
                ),
            )
            for queue, processing, has_error, completed_at, canceled_at in rows
        ]

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str | None,
        event_type: str,
        queue: str | None,
        slug: str | None,
        details: dict[str, Any],
    ) -> None:
        session.add(
            JobEventRow(
                job_id=job_id,
                event_type=event_type,
                queue=queue,
                slug=slug,
                details_json=dumps_json(details) if details else None,
                created_at=to_db_datetime(self.clock()),
            ),
        )


@contextmanager
def _store_errors() -> Iterator[None]:
    try:
        yield
    except (OperationalError, InterfaceError) as error:
        raise StoreUnavailableError(f"Job store unavailable: {error}") from error


def _eligible_clause(now: datetime) -> ColumnElement[bool]:
    return and_(
        col(JobRow.processing).is_(False),
        col(JobRow.completed_at).is_(None),
        col(JobRow.has_error).is_(False),
        col(JobRow.canceled_at).is_(None),
        or_(
            col(JobRow.wait_until).is_(None),
            col(JobRow.wait_until) <= to_db_datetime(now),
        ),
    )


def _status_clause(status: JobStatus) -> ColumnElement[bool]:
    if status == JobStatus.COMPLETED:
        return col(JobRow.completed_at).is_not(None)
    if status == JobStatus.FAILED:
        return and_(col(JobRow.completed_at).is_(None), col(JobRow.has_error).is_(True))
    if status == JobStatus.PROCESSING:
        return and_(
            col(JobRow.completed_at).is_(None),
            col(JobRow.has_error).is_(False),
            col(JobRow.processing).is_(True),
        )
    if status == JobStatus.CANCELED:
        return and_(
            col(JobRow.completed_at).is_(None),
            col(JobRow.has_error).is_(False),
            col(JobRow.processing).is_(False),
            col(JobRow.canceled_at).is_not(None),
        )
    return and_(
        col(JobRow.completed_at).is_(None),
        col(JobRow.has_error).is_(False),
        col(JobRow.processing).is_(False),
        col(JobRow.canceled_at).is_(None),
    )


def _filter_conditions(job_filter: JobFilter) -> list[ColumnElement[bool]]:
    conditions: list[ColumnElement[bool]] = []
    if job_filter.job_id is not None:
        conditions.append(col(JobRow.job_id) == job_filter.job_id)
    if job_filter.queue is not None:
        conditions.append(col(JobRow.queue) == job_filter.queue)
    if job_filter.status is not None:
        conditions.append(_status_clause(job_filter.status))
    if job_filter.slug is not None:
        conditions.append(
            or_(
                col(JobRow.task_slug) == job_filter.slug,
                col(JobRow.workflow_slug) == job_filter.slug,
            ),
        )
    if job_filter.finished_before is not None:
        conditions.append(
            func.coalesce(JobRow.completed_at, JobRow.updated_at)
            < to_db_datetime(job_filter.finished_before),
        )
    return conditions


def _derive_status(
    *,
    processing: bool,
    has_error: bool,
    completed: bool,
    canceled: bool,
) -> JobStatus:
    if completed:
        return JobStatus.COMPLETED
    if has_error:
        return JobStatus.FAILED
    if processing:
        return JobStatus.PROCESSING
    if canceled:
        return JobStatus.CANCELED
    return JobStatus.QUEUED


def _enqueue_details(payload: JobCreate) -> dict[str, Any]:
    details: dict[str, Any] = {
        "kind": "task" if payload.task_slug is not None else "workflow",
    }
    if payload.wait_until is not None:
        details["wait_until"] = to_utc_aware_datetime(payload.wait_until).isoformat()
    return details


def _patch_values(patch: Mapping[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in patch.items():
        if key == "error":
            values["error_json"] = dumps_json(value) if value is not None else None
        elif key == "log":
            values["log_json"] = _dump_log(value)
        elif key == "task_status":
            values["task_status_json"] = _dump_task_status(value)
        elif key == "meta":
            values["meta_json"] = dumps_json(value or {})
        elif isinstance(value, datetime):
            values[key] = to_db_datetime(value)
        else:
            values[key] = value
    return values


def _dump_log(entries: list[JobLogEntry] | list[dict[str, Any]]) -> str:
    return dumps_json(
        [entry.to_dict() if isinstance(entry, JobLogEntry) else entry for entry in entries],
    )


def _dump_task_status(task_status: Mapping[str, StepStatus | dict[str, Any]]) -> str:
    return dumps_json(
        {
            step_id: status.to_dict() if isinstance(status, StepStatus) else status
            for step_id, status in task_status.items()
        },
    )


def _to_event_view(row: JobEventRow) -> JobEventView:
    details = loads_json(row.details_json, {})
    return JobEventView(
        event_id=row.event_id or 0,
        job_id=row.job_id,
        event_type=row.event_type,
        queue=row.queue,
        slug=row.slug,
        created_at=to_utc_aware_datetime(row.created_at),
        details=details if isinstance(details, dict) else {},
    )


def _to_job_view(row: JobRow) -> JobView:
    return JobView(
        job_id=row.job_id,
        queue=row.queue,
        task_slug=row.task_slug,
        workflow_slug=row.workflow_slug,
        input=loads_json(row.input_json, {}),
        wait_until=optional_utc(row.wait_until),
        processing=bool(row.processing),
        processing_started_at=optional_utc(row.processing_started_at),
        worker_id=row.worker_id,
        total_attempts=row.total_attempts,
        has_error=bool(row.has_error),
        error=loads_json(row.error_json, None),
        completed_at=optional_utc(row.completed_at),
        canceled_at=optional_utc(row.canceled_at),
        log=[JobLogEntry.from_dict(entry) for entry in loads_json(row.log_json, [])],
        task_status={
            step_id: StepStatus.from_dict(payload)
            for step_id, payload in loads_json(row.task_status_json, {}).items()
        },
        meta=loads_json(row.meta_json, {}),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
