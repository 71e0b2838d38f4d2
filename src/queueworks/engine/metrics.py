"""Statistics sink: queue health and event-derived counters."""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass

from queueworks.engine.models import JobEventView, JobStatus

COUNTED_EVENTS = (
    "enqueued",
    "scheduled",
    "claimed",
    "succeeded",
    "retry_scheduled",
    "failed",
    "canceled",
    "cancel_observed",
    "stale_recovered",
    "manual_retry",
    "schedule_vetoed",
    "schedule_hook_failed",
)


@dataclass(slots=True)
class RetryClassMetric:
    """Retry metrics for one failure class."""

    failure_class: str
    scheduled: int
    succeeded_after_retry: int

    @property
    def success_ratio(self) -> float:
        if self.scheduled == 0:
            return 0.0
        return self.succeeded_after_retry / self.scheduled


@dataclass(slots=True)
class DurationPercentiles:
    """Successful attempt durations for one task/workflow."""

    sample_size: int
    p50_seconds: float
    p90_seconds: float
    p99_seconds: float


@dataclass(slots=True)
class JobMetricsSnapshot:
    """Aggregated queue metrics used by the stats command."""

    queue_status_counts: dict[str, dict[str, int]]
    status_totals: dict[str, int]
    event_counts: dict[str, int]
    retry_metrics: list[RetryClassMetric]
    failure_class_counts: dict[str, int]
    duration_by_slug: dict[str, DurationPercentiles]


def build_job_metrics(
    *,
    queue_status_counts: dict[str, dict[str, int]],
    window_events: list[JobEventView],
) -> JobMetricsSnapshot:
    """Build one metrics snapshot from current status counts and windowed events."""

    status_totals = Counter[str]()
    for statuses in queue_status_counts.values():
        status_totals.update(statuses)

    event_counts = Counter[str]()
    failure_class_counts = Counter[str]()
    durations: dict[str, list[float]] = defaultdict(list)
    succeeded_jobs: set[str] = set()
    retry_classes_by_job: dict[str, list[str]] = defaultdict(list)

    for event in window_events:
        event_counts[event.event_type] += 1
        if event.event_type == "failed":
            failure_class_counts[str(event.details.get("failure_class", "unknown"))] += 1
        elif event.event_type == "retry_scheduled" and event.job_id is not None:
            retry_classes_by_job[event.job_id].append(
                str(event.details.get("failure_class", "unknown")),
            )
        elif event.event_type == "succeeded" and event.job_id is not None:
            succeeded_jobs.add(event.job_id)
            duration = event.details.get("duration_seconds")
            if isinstance(duration, int | float):
                durations[event.slug or "unknown"].append(float(duration))

    retry_totals = Counter[str]()
    retry_successes = Counter[str]()
    for job_id, classes in retry_classes_by_job.items():
        for failure_class in classes:
            retry_totals[failure_class] += 1
            if job_id in succeeded_jobs:
                retry_successes[failure_class] += 1

    return JobMetricsSnapshot(
        queue_status_counts=queue_status_counts,
        status_totals={
            status.value: status_totals.get(status.value, 0)
            for status in JobStatus
        },
        event_counts={key: event_counts.get(key, 0) for key in COUNTED_EVENTS},
        retry_metrics=[
            RetryClassMetric(
                failure_class=failure_class,
                scheduled=retry_totals[failure_class],
                succeeded_after_retry=retry_successes[failure_class],
            )
            for failure_class in sorted(retry_totals)
        ],
        failure_class_counts=dict(sorted(failure_class_counts.items())),
        duration_by_slug={
            slug: DurationPercentiles(
                sample_size=len(values),
                p50_seconds=_percentile(values, 0.50),
                p90_seconds=_percentile(values, 0.90),
                p99_seconds=_percentile(values, 0.99),
            )
            for slug, values in sorted(durations.items())
        },
    )


def render_stats_lines(*, snapshot: JobMetricsSnapshot, hours: int) -> list[str]:
    """Render operator-facing metrics lines for CLI output."""

    lines = [
        f"Job queue health (window={hours}h)",
        "Status totals: " + _fmt_key_value(snapshot.status_totals),
        "Queue/status: " + (_fmt_queue_status(snapshot.queue_status_counts) or "none"),
        "Events: " + _fmt_key_value(snapshot.event_counts),
    ]

    if snapshot.retry_metrics:
        lines.append("Retry metrics:")
        for metric in snapshot.retry_metrics:
            lines.append(
                "  "
                f"failure_class={metric.failure_class} scheduled={metric.scheduled} "
                f"succeeded_after_retry={metric.succeeded_after_retry} "
                f"success_ratio={metric.success_ratio:.2%}",
            )
    else:
        lines.append("Retry metrics: none")

    lines.append(
        "Failure-class distribution: " + (_fmt_key_value(snapshot.failure_class_counts) or "none"),
    )

    if snapshot.duration_by_slug:
        lines.append("Attempt durations (succeeded):")
        for slug, metrics in snapshot.duration_by_slug.items():
            lines.append(
                "  "
                f"slug={slug} n={metrics.sample_size} "
                f"p50={metrics.p50_seconds:.2f}s "
                f"p90={metrics.p90_seconds:.2f}s "
                f"p99={metrics.p99_seconds:.2f}s",
            )
    else:
        lines.append("Attempt durations: none")
    return lines


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))


def _fmt_queue_status(values: dict[str, dict[str, int]]) -> str:
    flattened: list[str] = []
    for queue in sorted(values):
        for status in sorted(values[queue]):
            flattened.append(f"{queue}/{status}={values[queue][status]}")
    return " ".join(flattened)


def _percentile(values: list[float], percentile: float) -> float:
    if not values:
        return 0.0
    sorted_values = sorted(values)
    if len(sorted_values) == 1:
        return sorted_values[0]
    rank = (len(sorted_values) - 1) * percentile
    lower = int(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    weight = rank - lower
    return sorted_values[lower] * (1.0 - weight) + sorted_values[upper] * weight
