"""Create jobs, job events and cron schedule slot tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("queue", sa.String(), nullable=False),
        sa.Column("task_slug", sa.String(), nullable=True),
        sa.Column("workflow_slug", sa.String(), nullable=True),
        sa.Column("input_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("wait_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("total_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("has_error", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_json", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("log_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("task_status_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("meta_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "(task_slug IS NULL) <> (workflow_slug IS NULL)",
            name="ck_jobs_single_definition",
        ),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index(
        "idx_jobs_claim",
        "jobs",
        ["queue", "processing", "completed_at", "has_error", "wait_until"],
        unique=False,
    )
    op.create_index("idx_jobs_created_at", "jobs", ["created_at"], unique=False)
    op.create_index("idx_jobs_task_slug", "jobs", ["task_slug"], unique=False)
    op.create_index("idx_jobs_workflow_slug", "jobs", ["workflow_slug"], unique=False)

    op.create_table(
        "job_events",
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("queue", sa.String(), nullable=True),
        sa.Column("slug", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index(
        "idx_job_events_job_time",
        "job_events",
        ["job_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_job_events_type_time",
        "job_events",
        ["event_type", "created_at"],
        unique=False,
    )

    op.create_table(
        "schedule_slots",
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("schedule_index", sa.Integer(), nullable=False),
        sa.Column("last_slot_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_job_id", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("kind", "slug", "schedule_index"),
    )


def downgrade() -> None:
    op.drop_table("schedule_slots")
    op.drop_index("idx_job_events_type_time", table_name="job_events")
    op.drop_index("idx_job_events_job_time", table_name="job_events")
    op.drop_table("job_events")
    op.drop_index("idx_jobs_workflow_slug", table_name="jobs")
    op.drop_index("idx_jobs_task_slug", table_name="jobs")
    op.drop_index("idx_jobs_created_at", table_name="jobs")
    op.drop_index("idx_jobs_claim", table_name="jobs")
    op.drop_table("jobs")
