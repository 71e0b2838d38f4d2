"""Cron scheduler that produces jobs for task and workflow schedules."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from croniter import croniter  # type: ignore[import-untyped]

from queueworks.engine.definitions import Definitions, ScheduleDecision, ScheduledEntry
from queueworks.engine.errors import ScheduleHookError
from queueworks.engine.models import JobCreate
from queueworks.engine.store import JobStore
from queueworks.storage.common import utc_now

logger = logging.getLogger(__name__)


class ScheduleOutcomeStatus(str, Enum):
    SCHEDULED = "scheduled"
    NOT_DUE = "not_due"
    BASELINE = "baseline"
    VETOED = "vetoed"
    HOOK_FAILED = "hook_failed"
    CONFLICT = "conflict"


@dataclass(slots=True)
class ScheduleContext:
    """Arguments handed to ``before_schedule``/``after_schedule`` hooks."""

    kind: str
    slug: str
    schedule_index: int
    cron: str
    queue: str
    slot: datetime
    now: datetime
    stats: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class ScheduleOutcome:
    """What one schedule evaluation did."""

    slug: str
    schedule_index: int
    status: ScheduleOutcomeStatus
    slot: datetime
    job_id: str | None = None
    error: str | None = None


@dataclass(slots=True)
class ScheduleTickSummary:
    """Aggregate counters for one scheduler tick."""

    evaluated: int = 0
    scheduled: int = 0
    vetoed: int = 0
    hook_failed: int = 0
    skipped: int = 0
    outcomes: list[ScheduleOutcome] = field(default_factory=list)

    def record(self, outcome: ScheduleOutcome) -> None:
        self.evaluated += 1
        self.outcomes.append(outcome)
        if outcome.status == ScheduleOutcomeStatus.SCHEDULED:
            self.scheduled += 1
        elif outcome.status == ScheduleOutcomeStatus.VETOED:
            self.vetoed += 1
        elif outcome.status == ScheduleOutcomeStatus.HOOK_FAILED:
            self.hook_failed += 1
        else:
            self.skipped += 1


def current_slot(expression: str, now: datetime) -> datetime:
    """Latest cron slot at or before ``now``."""

    base = now.replace(microsecond=0) + timedelta(seconds=1)
    return croniter(expression, base).get_prev(datetime)


class Scheduler:
    """Evaluates every registered cron schedule once per :meth:`tick`.

    A slot is produced at most once per ``(kind, slug, schedule index)``: the slot
    reservation and the job insert share one store transaction. Missed slots are
    not backfilled; a late tick produces only the most recent one. A schedule seen
    for the first time produces its current slot only if that slot started within
    ``first_run_grace_seconds``; otherwise the slot is recorded as a baseline.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        definitions: Definitions,
        default_queue: str = "default",
        first_run_grace_seconds: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.definitions = definitions
        self.default_queue = default_queue
        self.first_run_grace_seconds = first_run_grace_seconds
        self.clock = clock

    def tick(self) -> ScheduleTickSummary:
        now = self.clock()
        summary = ScheduleTickSummary()
        for entry in self.definitions.scheduled():
            summary.record(self._evaluate(entry, now=now))
        return summary

    def _evaluate(self, entry: ScheduledEntry, *, now: datetime) -> ScheduleOutcome:
        definition, index, schedule = entry
        kind = definition.kind.value
        slot = current_slot(schedule.cron, now)
        last_slot = self.store.last_schedule_slot(
            kind=kind,
            slug=definition.slug,
            schedule_index=index,
        )
        if last_slot is not None and last_slot >= slot:
            return self._outcome(entry, ScheduleOutcomeStatus.NOT_DUE, slot)
        if (
            last_slot is None
            and (now - slot).total_seconds() > self.first_run_grace_seconds
        ):
            self.store.record_schedule_slot(
                kind=kind,
                slug=definition.slug,
                schedule_index=index,
                slot=slot,
            )
            return self._outcome(entry, ScheduleOutcomeStatus.BASELINE, slot)

        context = ScheduleContext(
            kind=kind,
            slug=definition.slug,
            schedule_index=index,
            cron=schedule.cron,
            queue=schedule.queue or definition.queue or self.default_queue,
            slot=slot,
            now=now,
            stats=self.store.count_jobs(slug=definition.slug),
        )
        try:
            decision = self._before_schedule(entry, context)
        except ScheduleHookError as error:
            logger.warning(
                "Schedule %s#%d slot %s skipped: %s",
                definition.slug,
                index,
                slot.isoformat(),
                error,
            )
            self._add_tick_event(context, "schedule_hook_failed", {"error": str(error)})
            return self._outcome(entry, ScheduleOutcomeStatus.HOOK_FAILED, slot, error=str(error))

        if not decision.should_schedule:
            logger.info("Schedule %s#%d slot %s vetoed", definition.slug, index, slot.isoformat())
            self._add_tick_event(context, "schedule_vetoed", {})
            return self._outcome(entry, ScheduleOutcomeStatus.VETOED, slot)

        job_input = decision.input if decision.input is not None else schedule.input
        payload = JobCreate(
            queue=context.queue,
            input=dict(job_input or {}),
            task_slug=definition.slug if kind == "task" else None,
            workflow_slug=definition.slug if kind == "workflow" else None,
            wait_until=decision.wait_until,
            meta={
                "schedule": {
                    "kind": kind,
                    "slug": definition.slug,
                    "index": index,
                    "cron": schedule.cron,
                    "slot": slot.isoformat(),
                },
            },
        )
        job = self.store.insert_scheduled(
            kind=kind,
            slug=definition.slug,
            schedule_index=index,
            slot=slot,
            payload=payload,
        )
        if job is None:
            logger.debug("Schedule %s#%d slot already produced elsewhere", definition.slug, index)
            return self._outcome(entry, ScheduleOutcomeStatus.CONFLICT, slot)

        logger.info(
            "Scheduled job %s for %s %s (slot %s, queue=%s)",
            job.job_id,
            kind,
            definition.slug,
            slot.isoformat(),
            job.queue,
        )
        outcome = self._outcome(entry, ScheduleOutcomeStatus.SCHEDULED, slot, job_id=job.job_id)
        self._after_schedule(entry, context, outcome)
        return outcome

    def _before_schedule(self, entry: ScheduledEntry, context: ScheduleContext) -> ScheduleDecision:
        hook = entry.schedule.before_schedule
        if hook is None:
            return ScheduleDecision()
        try:
            decision = hook(context)
        except Exception as error:
            raise ScheduleHookError(
                f"before_schedule hook failed: {error}",
                slug=entry.definition.slug,
                hook="before_schedule",
            ) from error
        return _coerce_decision(decision, slug=entry.definition.slug)

    def _after_schedule(
        self,
        entry: ScheduledEntry,
        context: ScheduleContext,
        outcome: ScheduleOutcome,
    ) -> None:
        hook = entry.schedule.after_schedule
        if hook is None:
            return
        try:
            hook(context, outcome)
        except Exception:
            logger.exception(
                "after_schedule hook failed for %s#%d (job %s kept)",
                entry.definition.slug,
                entry.index,
                outcome.job_id,
            )

    def _add_tick_event(
        self,
        context: ScheduleContext,
        event_type: str,
        extra: dict[str, Any],
    ) -> None:
        self.store.add_event(
            job_id=None,
            event_type=event_type,
            queue=context.queue,
            slug=context.slug,
            details={
                "kind": context.kind,
                "schedule_index": context.schedule_index,
                "slot": context.slot.isoformat(),
                **extra,
            },
        )

    @staticmethod
    def _outcome(
        entry: ScheduledEntry,
        status: ScheduleOutcomeStatus,
        slot: datetime,
        *,
        job_id: str | None = None,
        error: str | None = None,
    ) -> ScheduleOutcome:
        return ScheduleOutcome(
            slug=entry.definition.slug,
            schedule_index=entry.index,
            status=status,
            slot=slot,
            job_id=job_id,
            error=error,
        )


def _coerce_decision(value: object, *, slug: str) -> ScheduleDecision:
    """Normalize a ``before_schedule`` answer; malformed answers are hook failures."""

    if value is None:
        return ScheduleDecision()
    if isinstance(value, ScheduleDecision):
        return value
    if isinstance(value, bool):
        return ScheduleDecision(should_schedule=value)
    if not isinstance(value, Mapping):
        raise ScheduleHookError(
            f"before_schedule hook returned {type(value).__name__}, expected a decision",
            slug=slug,
            hook="before_schedule",
        )

    unknown = set(value) - {"should_schedule", "input", "wait_until"}
    job_input = value.get("input")
    wait_until = value.get("wait_until")
    if unknown:
        problem = f"unknown decision keys: {', '.join(sorted(map(str, unknown)))}"
    elif job_input is not None and not isinstance(job_input, Mapping):
        problem = "decision input must be a mapping"
    elif wait_until is not None and not isinstance(wait_until, datetime):
        problem = "decision wait_until must be a datetime"
    else:
        return ScheduleDecision(
            should_schedule=bool(value.get("should_schedule", True)),
            input=job_input,
            wait_until=wait_until,
        )
    raise ScheduleHookError(f"before_schedule hook {problem}", slug=slug, hook="before_schedule")
