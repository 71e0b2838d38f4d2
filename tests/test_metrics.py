from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import allure

from queueworks.engine.metrics import build_job_metrics, render_stats_lines
from queueworks.engine.models import JobEventView

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Statistics"),
]

_EVENT_TIME = datetime(2026, 1, 5, 10, 0, tzinfo=UTC)


def _event(
    event_id: int,
    event_type: str,
    *,
    job_id: str | None = "job-1",
    slug: str = "echo",
    **details: Any,
) -> JobEventView:
    return JobEventView(
        event_id=event_id,
        job_id=job_id,
        event_type=event_type,
        queue="default",
        slug=slug,
        created_at=_EVENT_TIME,
        details=details,
    )


def test_build_job_metrics_aggregates_events() -> None:
    snapshot = build_job_metrics(
        queue_status_counts={
            "default": {"queued": 2, "completed": 3},
            "emails": {"failed": 1},
        },
        window_events=[
            _event(1, "enqueued"),
            _event(2, "retry_scheduled", failure_class="step"),
            _event(3, "succeeded", duration_seconds=1.0),
            _event(4, "retry_scheduled", job_id="job-2", failure_class="timeout"),
            _event(5, "failed", job_id="job-2", failure_class="timeout"),
            _event(6, "succeeded", job_id="job-3", duration_seconds=3.0),
            _event(7, "schedule_vetoed", job_id=None),
        ],
    )

    assert snapshot.status_totals == {
        "queued": 2,
        "processing": 0,
        "completed": 3,
        "failed": 1,
        "canceled": 0,
    }
    assert snapshot.event_counts["succeeded"] == 2
    assert snapshot.event_counts["schedule_vetoed"] == 1
    assert snapshot.event_counts["claimed"] == 0
    assert snapshot.failure_class_counts == {"timeout": 1}
    retry = {metric.failure_class: metric for metric in snapshot.retry_metrics}
    assert retry["step"].succeeded_after_retry == 1
    assert retry["step"].success_ratio == 1.0
    assert retry["timeout"].succeeded_after_retry == 0
    durations = snapshot.duration_by_slug["echo"]
    assert durations.sample_size == 2
    assert durations.p50_seconds == 2.0


def test_render_stats_lines_for_empty_store() -> None:
    snapshot = build_job_metrics(queue_status_counts={}, window_events=[])

    lines = render_stats_lines(snapshot=snapshot, hours=24)

    assert lines[0] == "Job queue health (window=24h)"
    assert "Queue/status: none" in lines
    assert "Retry metrics: none" in lines
    assert "Failure-class distribution: none" in lines
    assert "Attempt durations: none" in lines


def test_render_stats_lines_lists_queue_status_and_retries() -> None:
    snapshot = build_job_metrics(
        queue_status_counts={"default": {"queued": 1}},
        window_events=[
            _event(1, "retry_scheduled", failure_class="handler"),
            _event(2, "succeeded", duration_seconds=0.5),
        ],
    )

    lines = render_stats_lines(snapshot=snapshot, hours=6)

    assert "Queue/status: default/queued=1" in lines
    assert (
        "  failure_class=handler scheduled=1 succeeded_after_retry=1 success_ratio=100.00%"
        in lines
    )
    assert "  slug=echo n=1 p50=0.50s p90=0.50s p99=0.50s" in lines
