"""Queue Coordinator: which queues to poll, how many jobs, sequential or parallel."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from queueworks.config import QueueSettings
from queueworks.engine.models import JobOutcome, JobView, QueueOrder, RunSummary
from queueworks.engine.runner import JobRunner

logger = logging.getLogger(__name__)

ALL_QUEUES = "all"


@dataclass(slots=True)
class RunRequest:
    """One "run jobs" invocation."""

    queue: str
    limit: int
    sequential: bool = False

    @property
    def all_queues(self) -> bool:
        return self.queue == ALL_QUEUES


@dataclass(slots=True)
class QueuePlan:
    """Resolved polling step for one queue."""

    queue: str
    order: QueueOrder
    limit: int


class QueueCoordinator:
    """Drives a runner over the queues selected by a run request."""

    def __init__(
        self,
        *,
        runner: JobRunner,
        queues: QueueSettings | None = None,
        max_parallel: int = 4,
    ) -> None:
        self.runner = runner
        self.queues = queues or QueueSettings()
        self.max_parallel = max_parallel

    def plan(self, request: RunRequest, *, remaining: int | None = None) -> list[QueuePlan]:
        """Queues to poll for ``request``, each bounded by its own and the global limit."""

        budget = request.limit if remaining is None else remaining
        if request.all_queues:
            names = self.runner.store.eligible_queues(now=self.runner.clock())
        else:
            names = [request.queue]
        return [
            QueuePlan(
                queue=name,
                order=self.queues.order_for(name),
                limit=self.queues.limit_for(name, budget),
            )
            for name in names
        ]

    def run(self, request: RunRequest) -> RunSummary:
        """Process up to ``request.limit`` jobs. Store outages propagate."""

        if request.limit <= 0:
            raise ValueError("Run limit must be a positive integer.")

        summary = RunSummary()
        summary.stale_recovered = len(self.runner.recover_stale())
        remaining = request.limit
        for plan in self.plan(request):
            if remaining <= 0:
                break
            jobs = self.runner.claim(
                queue=plan.queue,
                order=plan.order,
                limit=min(plan.limit, remaining),
            )
            if plan.queue not in summary.queues:
                summary.queues.append(plan.queue)
            if not jobs:
                continue
            summary.claimed += len(jobs)
            remaining -= len(jobs)
            for outcome in self._process(jobs, sequential=request.sequential):
                summary.record(outcome)

        logger.info(
            "Run finished: claimed=%d succeeded=%d retried=%d failed=%d canceled=%d",
            summary.claimed,
            summary.succeeded,
            summary.retried,
            summary.failed,
            summary.canceled,
        )
        return summary

    def _process(self, jobs: list[JobView], *, sequential: bool) -> list[JobOutcome]:
        if sequential or self.max_parallel <= 1 or len(jobs) == 1:
            return [self.runner.process_job(job) for job in jobs]

        with ThreadPoolExecutor(
            max_workers=min(self.max_parallel, len(jobs)),
            thread_name_prefix="queueworks-run",
        ) as executor:
            return list(executor.map(self.runner.process_job, jobs))
