"""Domain models for the job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from queueworks.storage.common import from_iso


class JobStatus(str, Enum):
    """Derived lifecycle states of a job record."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


class DefinitionKind(str, Enum):
    TASK = "task"
    WORKFLOW = "workflow"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    DEFINITION = "definition"
    HANDLER = "handler"
    TIMEOUT = "timeout"
    STEP = "step"
    CANCELED = "canceled"


class LogStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


SORTABLE_FIELDS: frozenset[str] = frozenset(
    {"created_at", "updated_at", "wait_until", "total_attempts"},
)


@dataclass(frozen=True, slots=True)
class QueueOrder:
    """Processing order for candidate selection, e.g. ``created_at`` or ``-created_at``."""

    column: str = "created_at"
    descending: bool = False

    @classmethod
    def parse(cls, value: str) -> QueueOrder:
        raw = value.strip()
        descending = raw.startswith("-")
        name = raw.lstrip("-+").strip()
        if name not in SORTABLE_FIELDS:
            raise ValueError(
                f"Unsupported processing order field: {name!r}. "
                f"Expected one of: {', '.join(sorted(SORTABLE_FIELDS))}.",
            )
        return cls(column=name, descending=descending)

    def __str__(self) -> str:
        return f"-{self.column}" if self.descending else self.column


FIFO = QueueOrder()
LIFO = QueueOrder(descending=True)


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    queue: str
    input: dict[str, Any] = field(default_factory=dict)
    task_slug: str | None = None
    workflow_slug: str | None = None
    wait_until: datetime | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    job_id: str | None = None

    def __post_init__(self) -> None:
        if (self.task_slug is None) == (self.workflow_slug is None):
            raise ValueError("A job references exactly one of task_slug or workflow_slug.")


@dataclass(slots=True)
class StepStatus:
    """Completion record for one step, keyed by step id on the job."""

    complete: bool = False
    output: Any = None
    attempts: int = 0
    task_slug: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "complete": self.complete,
            "output": self.output,
            "attempts": self.attempts,
            "task_slug": self.task_slug,
        }

    def copy(self) -> StepStatus:
        return StepStatus(
            complete=self.complete,
            output=self.output,
            attempts=self.attempts,
            task_slug=self.task_slug,
        )

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> StepStatus:
        return cls(
            complete=bool(payload.get("complete", False)),
            output=payload.get("output"),
            attempts=int(payload.get("attempts", 0)),
            task_slug=payload.get("task_slug"),
        )


@dataclass(slots=True)
class JobLogEntry:
    """One handler invocation recorded on the job."""

    step_id: str
    task_slug: str | None
    status: LogStatus
    started_at: datetime
    completed_at: datetime
    output: Any = None
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "task_slug": self.task_slug,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "output": self.output,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> JobLogEntry:
        return cls(
            step_id=payload["step_id"],
            task_slug=payload.get("task_slug"),
            status=LogStatus(payload["status"]),
            started_at=from_iso(payload["started_at"]),
            completed_at=from_iso(payload["completed_at"]),
            output=payload.get("output"),
            error=payload.get("error"),
        )


@dataclass(frozen=True, slots=True)
class ClaimToken:
    """Identifies one claim of a job: the holder and the moment it claimed."""

    worker_id: str
    claimed_at: datetime


@dataclass(slots=True)
class JobView:
    """Readable job view for runner, scheduler and CLI."""

    job_id: str
    queue: str
    task_slug: str | None
    workflow_slug: str | None
    input: dict[str, Any]
    wait_until: datetime | None
    processing: bool
    processing_started_at: datetime | None
    worker_id: str | None
    total_attempts: int
    has_error: bool
    error: dict[str, Any] | None
    completed_at: datetime | None
    canceled_at: datetime | None
    log: list[JobLogEntry]
    task_status: dict[str, StepStatus]
    meta: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    @property
    def kind(self) -> DefinitionKind:
        return DefinitionKind.TASK if self.task_slug is not None else DefinitionKind.WORKFLOW

    @property
    def slug(self) -> str:
        return self.task_slug if self.task_slug is not None else str(self.workflow_slug)

    @property
    def claim(self) -> ClaimToken | None:
        if not self.processing or self.worker_id is None or self.processing_started_at is None:
            return None
        return ClaimToken(worker_id=self.worker_id, claimed_at=self.processing_started_at)

    @property
    def status(self) -> JobStatus:
        if self.completed_at is not None:
            return JobStatus.COMPLETED
        if self.has_error:
            return JobStatus.FAILED
        if self.processing:
            return JobStatus.PROCESSING
        if self.canceled_at is not None:
            return JobStatus.CANCELED
        return JobStatus.QUEUED


@dataclass(slots=True)
class JobFilter:
    """Selection used by query and delete_many."""

    job_id: str | None = None
    queue: str | None = None
    status: JobStatus | None = None
    slug: str | None = None
    finished_before: datetime | None = None
    limit: int | None = None


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail and statistics."""

    event_id: int
    job_id: str | None
    event_type: str
    queue: str | None
    slug: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its event stream."""

    job: JobView
    events: list[JobEventView]


class JobOutcomeStatus(str, Enum):
    COMPLETED = "completed"
    RETRIED = "retried"
    FAILED = "failed"
    CANCELED = "canceled"
    LOST = "lost"


@dataclass(slots=True)
class JobOutcome:
    """Result of one processed job attempt."""

    job_id: str
    status: JobOutcomeStatus
    error: dict[str, Any] | None = None
    wait_until: datetime | None = None


@dataclass(slots=True)
class RunSummary:
    """Aggregate counters for one run invocation."""

    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    canceled: int = 0
    lost: int = 0
    stale_recovered: int = 0
    queues: list[str] = field(default_factory=list)
    outcomes: list[JobOutcome] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    def record(self, outcome: JobOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status == JobOutcomeStatus.COMPLETED:
            self.succeeded += 1
        elif outcome.status == JobOutcomeStatus.RETRIED:
            self.retried += 1
        elif outcome.status == JobOutcomeStatus.FAILED:
            self.failed += 1
        elif outcome.status == JobOutcomeStatus.CANCELED:
            self.canceled += 1
        else:
            self.lost += 1

    def merge(self, other: RunSummary) -> None:
        self.claimed += other.claimed
        self.stale_recovered += other.stale_recovered
        for queue in other.queues:
            if queue not in self.queues:
                self.queues.append(queue)
        for outcome in other.outcomes:
            self.record(outcome)
