"""SQLModel ORM tables for job queue storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Index, Text, text
from sqlmodel import Field, SQLModel


class JobRow(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(
            "(task_slug IS NULL) <> (workflow_slug IS NULL)",
            name="ck_jobs_single_definition",
        ),
        Index("idx_jobs_claim", "queue", "processing", "completed_at", "has_error", "wait_until"),
        Index("idx_jobs_created_at", "created_at"),
        Index("idx_jobs_task_slug", "task_slug"),
        Index("idx_jobs_workflow_slug", "workflow_slug"),
    )

    job_id: str = Field(primary_key=True)
    queue: str
    task_slug: str | None = None
    workflow_slug: str | None = None
    input_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    wait_until: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    processing: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    processing_started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    worker_id: str | None = None
    total_attempts: int = Field(default=0)
    has_error: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    error_json: str | None = Field(default=None, sa_column=Column(Text))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    canceled_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    log_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    task_status_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    meta_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEventRow(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_job_events_job_time", "job_id", "created_at"),
        Index("idx_job_events_type_time", "event_type", "created_at"),
    )

    event_id: int | None = Field(default=None, primary_key=True)
    job_id: str | None = None
    event_type: str
    queue: str | None = None
    slug: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ScheduleSlotRow(SQLModel, table=True):
    __tablename__ = "schedule_slots"  # type: ignore[bad-override]

    kind: str = Field(primary_key=True)
    slug: str = Field(primary_key=True)
    schedule_index: int = Field(primary_key=True)
    last_slot_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_job_id: str | None = None
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
