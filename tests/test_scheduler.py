from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

import allure
import pytest

from queueworks.engine.definitions import (
    Definitions,
    ScheduleDecision,
    ScheduleDefinition,
    StepDefinition,
    TaskRegistry,
    WorkflowRegistry,
)
from queueworks.engine.models import JobFilter
from queueworks.engine.repository import JobRepository
from queueworks.engine.scheduler import (
    ScheduleContext,
    ScheduleOutcome,
    ScheduleOutcomeStatus,
    Scheduler,
    current_slot,
)

if TYPE_CHECKING:
    from conftest import FakeClock

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Cron Scheduler"),
]

HOURLY = "0 * * * *"


def _noop(task_input: dict[str, Any], _: Any) -> None:
    return None


def _definitions(*schedules: ScheduleDefinition, queue: str | None = None) -> Definitions:
    tasks = TaskRegistry()
    tasks.register("report", _noop, schedules=schedules, queue=queue)
    return Definitions(tasks=tasks)


def _scheduler(repository: JobRepository, definitions: Definitions, clock: FakeClock) -> Scheduler:
    return Scheduler(store=repository, definitions=definitions, clock=clock)


def test_current_slot_is_latest_cron_time_at_or_before_now() -> None:
    now = datetime(2026, 1, 5, 10, 17, 42, 123, tzinfo=UTC)

    assert current_slot(HOURLY, now) == datetime(2026, 1, 5, 10, 0, tzinfo=UTC)
    assert current_slot("*/5 * * * *", now) == datetime(2026, 1, 5, 10, 15, tzinfo=UTC)
    boundary = datetime(2026, 1, 5, 11, 0, tzinfo=UTC)
    assert current_slot(HOURLY, boundary) == boundary


def test_each_slot_produces_exactly_one_job(repository: JobRepository, clock: FakeClock) -> None:
    scheduler = _scheduler(repository, _definitions(ScheduleDefinition(cron=HOURLY)), clock)

    first = scheduler.tick()
    second = scheduler.tick()
    clock.advance(3600)
    third = scheduler.tick()

    assert [outcome.status for outcome in first.outcomes] == [ScheduleOutcomeStatus.SCHEDULED]
    assert [outcome.status for outcome in second.outcomes] == [ScheduleOutcomeStatus.NOT_DUE]
    assert [outcome.status for outcome in third.outcomes] == [ScheduleOutcomeStatus.SCHEDULED]
    jobs = repository.query(JobFilter(slug="report"))
    assert len(jobs) == 2
    slots = sorted(job.meta["schedule"]["slot"] for job in jobs)
    assert slots == ["2026-01-05T10:00:00+00:00", "2026-01-05T11:00:00+00:00"]


def test_missed_slots_are_not_backfilled(repository: JobRepository, clock: FakeClock) -> None:
    scheduler = _scheduler(repository, _definitions(ScheduleDefinition(cron=HOURLY)), clock)
    scheduler.tick()

    clock.advance(5 * 3600)
    summary = scheduler.tick()

    assert summary.scheduled == 1
    assert len(repository.query(JobFilter(slug="report"))) == 2


def test_first_sighting_of_old_slot_is_recorded_as_baseline(
    repository: JobRepository,
    clock: FakeClock,
) -> None:
    scheduler = _scheduler(repository, _definitions(ScheduleDefinition(cron="0 3 * * *")), clock)

    baseline = scheduler.tick()
    again = scheduler.tick()

    assert baseline.outcomes[0].status == ScheduleOutcomeStatus.BASELINE
    assert again.outcomes[0].status == ScheduleOutcomeStatus.NOT_DUE
    assert repository.query(JobFilter()) == []

    clock.advance(17 * 3600)
    next_day = scheduler.tick()
    assert next_day.outcomes[0].status == ScheduleOutcomeStatus.SCHEDULED


def test_two_schedulers_share_one_slot(db_path: Path, clock: FakeClock) -> None:
    setup = JobRepository(db_path, clock=clock)
    setup.init_schema()
    setup.close()
    definitions = _definitions(ScheduleDefinition(cron=HOURLY))
    statuses: list[ScheduleOutcomeStatus] = []
    start = threading.Event()

    def _tick() -> None:
        repository = JobRepository(db_path, clock=clock)
        try:
            start.wait(timeout=2)
            summary = _scheduler(repository, definitions, clock).tick()
            statuses.extend(outcome.status for outcome in summary.outcomes)
        finally:
            repository.close()

    threads = [threading.Thread(target=_tick) for _ in range(3)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=10)

    assert statuses.count(ScheduleOutcomeStatus.SCHEDULED) == 1
    reader = JobRepository(db_path, clock=clock)
    try:
        assert len(reader.query(JobFilter(slug="report"))) == 1
    finally:
        reader.close()


def test_veto_does_not_consume_slot(repository: JobRepository, clock: FakeClock) -> None:
    allow = {"value": False}
    contexts: list[ScheduleContext] = []

    def _before(context: ScheduleContext) -> ScheduleDecision:
        contexts.append(context)
        return ScheduleDecision(should_schedule=allow["value"])

    scheduler = _scheduler(
        repository,
        _definitions(ScheduleDefinition(cron=HOURLY, before_schedule=_before)),
        clock,
    )

    vetoed = scheduler.tick()
    allow["value"] = True
    allowed = scheduler.tick()

    assert vetoed.vetoed == 1
    assert allowed.scheduled == 1
    assert contexts[0].slot == datetime(2026, 1, 5, 10, 0, tzinfo=UTC)
    assert contexts[0].queue == "default"
    assert contexts[1].stats == {}
    events = repository.list_events(event_types=("schedule_vetoed",))
    assert len(events) == 1
    assert events[0].job_id is None
    assert events[0].slug == "report"


def test_hook_failure_skips_slot_and_is_recorded(
    repository: JobRepository,
    clock: FakeClock,
) -> None:
    def _before(_: ScheduleContext) -> ScheduleDecision:
        raise RuntimeError("quota service down")

    scheduler = _scheduler(
        repository,
        _definitions(ScheduleDefinition(cron=HOURLY, before_schedule=_before)),
        clock,
    )

    summary = scheduler.tick()

    assert summary.hook_failed == 1
    outcome = summary.outcomes[0]
    assert outcome.status == ScheduleOutcomeStatus.HOOK_FAILED
    assert outcome.error is not None
    assert "quota service down" in outcome.error
    assert repository.query(JobFilter()) == []
    assert repository.last_schedule_slot(kind="task", slug="report", schedule_index=0) is None
    events = repository.list_events(event_types=("schedule_hook_failed",))
    assert len(events) == 1


def test_decision_overrides_input_and_wait_until(
    repository: JobRepository,
    clock: FakeClock,
) -> None:
    delay_until = clock() + timedelta(minutes=10)

    def _before(context: ScheduleContext) -> ScheduleDecision:
        return ScheduleDecision(input={"from": "hook"}, wait_until=delay_until)

    scheduler = _scheduler(
        repository,
        _definitions(
            ScheduleDefinition(
                cron=HOURLY,
                queue="reports",
                input={"from": "schedule"},
                before_schedule=_before,
            ),
            queue="ignored",
        ),
        clock,
    )

    summary = scheduler.tick()

    job = repository.get_job(str(summary.outcomes[0].job_id))
    assert job is not None
    assert job.input == {"from": "hook"}
    assert job.wait_until == delay_until
    assert job.queue == "reports"
    assert job.meta["schedule"]["cron"] == HOURLY


def test_after_schedule_errors_keep_the_job(repository: JobRepository, clock: FakeClock) -> None:
    seen: list[ScheduleOutcome] = []

    def _after(context: ScheduleContext, outcome: ScheduleOutcome) -> None:
        seen.append(outcome)
        raise RuntimeError("notifier offline")

    scheduler = _scheduler(
        repository,
        _definitions(ScheduleDefinition(cron=HOURLY, after_schedule=_after)),
        clock,
    )

    summary = scheduler.tick()

    assert summary.scheduled == 1
    assert seen[0].job_id == summary.outcomes[0].job_id
    assert len(repository.query(JobFilter(slug="report"))) == 1


def test_schedule_context_reports_existing_job_counts(
    repository: JobRepository,
    clock: FakeClock,
) -> None:
    contexts: list[ScheduleContext] = []

    def _before(context: ScheduleContext) -> None:
        contexts.append(context)

    scheduler = _scheduler(
        repository,
        _definitions(ScheduleDefinition(cron=HOURLY, before_schedule=_before)),
        clock,
    )
    scheduler.tick()
    clock.advance(3600)
    scheduler.tick()

    assert contexts[1].stats == {"queued": 1}


def test_workflow_schedules_produce_workflow_jobs(
    repository: JobRepository,
    clock: FakeClock,
) -> None:
    tasks = TaskRegistry()
    tasks.register("report", _noop)
    workflows = WorkflowRegistry()
    workflows.register(
        "nightly",
        steps=(StepDefinition(step_id="report", task="report"),),
        schedules=(ScheduleDefinition(cron=HOURLY),),
        queue="batch",
    )
    scheduler = _scheduler(repository, Definitions(tasks=tasks, workflows=workflows), clock)

    summary = scheduler.tick()

    job = repository.get_job(str(summary.outcomes[0].job_id))
    assert job is not None
    assert job.workflow_slug == "nightly"
    assert job.task_slug is None
    assert job.queue == "batch"
    assert job.meta["schedule"]["kind"] == "workflow"


def test_mapping_decision_is_accepted(repository: JobRepository, clock: FakeClock) -> None:
    def _before(_: ScheduleContext) -> dict[str, Any]:
        return {"should_schedule": False}

    scheduler = _scheduler(
        repository,
        _definitions(ScheduleDefinition(cron="* * * * *", before_schedule=_before)),
        clock,
    )

    summary = scheduler.tick()

    assert summary.vetoed == 1
    assert repository.query(JobFilter()) == []


@pytest.mark.parametrize(
    "answer",
    [
        "yes",
        {"should_schedule": True, "priority": 5},
        {"input": ["not", "a", "mapping"]},
        {"wait_until": "2026-01-05T11:00:00"},
    ],
)
def test_malformed_decision_fails_only_that_schedule(
    repository: JobRepository,
    clock: FakeClock,
    answer: object,
) -> None:
    tasks = TaskRegistry()
    tasks.register(
        "broken",
        _noop,
        schedules=(ScheduleDefinition(cron="* * * * *", before_schedule=lambda _: answer),),
    )
    tasks.register("healthy", _noop, schedules=(ScheduleDefinition(cron="* * * * *"),))
    scheduler = _scheduler(repository, Definitions(tasks=tasks), clock)

    summary = scheduler.tick()

    statuses = {outcome.slug: outcome.status for outcome in summary.outcomes}
    assert statuses == {
        "broken": ScheduleOutcomeStatus.HOOK_FAILED,
        "healthy": ScheduleOutcomeStatus.SCHEDULED,
    }
    assert [job.slug for job in repository.query(JobFilter())] == ["healthy"]
    assert len(repository.list_events(event_types=("schedule_hook_failed",))) == 1
