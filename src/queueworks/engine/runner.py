"""Runner state machine: claim, execute, then complete, retry or fail each job."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any

from queueworks.engine.definitions import Definition, Definitions, JobCallback
from queueworks.engine.errors import (
    JobCanceledError,
    JobLostError,
    JobTimeoutError,
    QueueworksError,
    StepFailedError,
    StoreUnavailableError,
    error_payload,
)
from queueworks.engine.failures import classify_failure
from queueworks.engine.models import (
    JobFilter,
    JobLogEntry,
    JobOutcome,
    JobOutcomeStatus,
    JobView,
    LogStatus,
    QueueOrder,
    StepStatus,
)
from queueworks.engine.retry import RestoreContext, RetryPolicy, resolve_policy
from queueworks.engine.store import JobStore
from queueworks.engine.workflow import JobExecution
from queueworks.storage.common import utc_now

logger = logging.getLogger(__name__)

_RELEASE_PATCH: dict[str, Any] = {
    "processing": False,
    "processing_started_at": None,
    "worker_id": None,
}


class JobRunner:
    """Executes claimed jobs against the frozen definitions bundle."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        definitions: Definitions,
        worker_id: str,
        job_timeout_seconds: float | None = None,
        stale_after_seconds: int = 1800,
        delete_on_complete: bool = False,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.definitions = definitions
        self.worker_id = worker_id
        self.job_timeout_seconds = job_timeout_seconds
        self.stale_after_seconds = stale_after_seconds
        self.delete_on_complete = delete_on_complete
        self.clock = clock
        self._random = rng or random.Random()  # noqa: S311

    def claim(self, *, queue: str | None, order: QueueOrder, limit: int) -> list[JobView]:
        """Claim up to ``limit`` due jobs of ``queue`` (``None`` means any queue)."""

        jobs = self.store.claim(
            queue=queue,
            now=self.clock(),
            order=order,
            limit=limit,
            worker_id=self.worker_id,
        )
        for job in jobs:
            logger.info(
                "Claimed job %s (%s %s, queue=%s, attempt=%d)",
                job.job_id,
                job.kind.value,
                job.slug,
                job.queue,
                job.total_attempts + 1,
            )
        return jobs

    def recover_stale(self) -> list[str]:
        """Release jobs held longer than the stale window by a presumably dead runner."""

        if self.stale_after_seconds <= 0:
            return []
        recovered = self.store.recover_stale_jobs(
            stale_before=self.clock() - timedelta(seconds=self.stale_after_seconds),
        )
        for job_id in recovered:
            logger.warning("Recovered stale job %s", job_id)
        return recovered

    def process_job(self, job: JobView) -> JobOutcome:
        """Run one claimed job to an outcome. Only store outages escape."""

        started_at = self.clock()
        definition: Definition | None = None
        execution: JobExecution | None = None
        try:
            definition = self.definitions.resolve(
                task_slug=job.task_slug,
                workflow_slug=job.workflow_slug,
            )
            execution = JobExecution(
                store=self.store,
                job=job,
                definitions=self.definitions,
                definition=definition,
                clock=self.clock,
            )
            self._execute_with_deadline(execution, timeout=self._timeout_for(definition))
        except StoreUnavailableError:
            raise
        except JobLostError:
            logger.warning("Job %s is no longer held by worker %s", job.job_id, self.worker_id)
            return JobOutcome(job_id=job.job_id, status=JobOutcomeStatus.LOST)
        except JobCanceledError:
            return self._handle_canceled(job=job, execution=execution)
        except QueueworksError as error:
            return self._handle_failure(
                job=job,
                definition=definition,
                execution=execution,
                error=error,
                started_at=started_at,
            )
        return self._handle_success(
            job=job,
            definition=definition,
            execution=execution,
            started_at=started_at,
        )

    def _timeout_for(self, definition: Definition) -> float | None:
        if definition.timeout_seconds is not None:
            return definition.timeout_seconds
        return self.job_timeout_seconds

    def _execute_with_deadline(self, execution: JobExecution, *, timeout: float | None) -> None:
        if timeout is None:
            execution.execute()
            return

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="queueworks-job")
        future = executor.submit(execution.execute)
        try:
            future.result(timeout=timeout)
        except TimeoutError:
            execution.abort()
            raise JobTimeoutError(f"Job exceeded its {timeout:g}s deadline") from None
        finally:
            executor.shutdown(wait=False)

    def _handle_success(
        self,
        *,
        job: JobView,
        definition: Definition,
        execution: JobExecution,
        started_at: datetime,
    ) -> JobOutcome:
        now = self.clock()
        attempts = job.total_attempts + 1
        task_status, log = execution.snapshot()
        updated = self.store.update(
            job.job_id,
            {
                **_RELEASE_PATCH,
                "completed_at": now,
                "total_attempts": attempts,
                "has_error": False,
                "error": None,
                "wait_until": None,
                "task_status": task_status,
                "log": log,
            },
            require_processing=True,
            claim=job.claim,
            event_type="succeeded",
            details={
                "attempt": attempts,
                "duration_seconds": round((now - started_at).total_seconds(), 3),
            },
        )
        if not updated:
            logger.warning("Job %s finished but was no longer held; result dropped", job.job_id)
            return JobOutcome(job_id=job.job_id, status=JobOutcomeStatus.LOST)

        logger.info("Job %s (%s) completed on attempt %d", job.job_id, job.slug, attempts)
        self._invoke_callback(definition.on_success, job_id=job.job_id, name="on_success")
        if self.delete_on_complete or definition.delete_on_complete:
            self.store.delete_many(JobFilter(job_id=job.job_id))
        return JobOutcome(job_id=job.job_id, status=JobOutcomeStatus.COMPLETED)

    def _handle_failure(  # noqa: PLR0913
        self,
        *,
        job: JobView,
        definition: Definition | None,
        execution: JobExecution | None,
        error: QueueworksError,
        started_at: datetime,
    ) -> JobOutcome:
        now = self.clock()
        attempts = job.total_attempts + 1
        classification = classify_failure(error)
        payload = error_payload(error)

        task_status: dict[str, StepStatus]
        log: list[JobLogEntry]
        if execution is not None:
            task_status, log = execution.snapshot()
        else:
            task_status, log = dict(job.task_status), list(job.log)
        if not isinstance(error, StepFailedError):
            log.append(
                JobLogEntry(
                    step_id=job.slug,
                    task_slug=job.task_slug,
                    status=LogStatus.FAILED,
                    started_at=started_at,
                    completed_at=now,
                    error=payload,
                ),
            )

        policy, policy_attempts = _policy_for(error, definition=definition, attempts=attempts)
        details: dict[str, object] = {
            **classification.to_event_details(),
            "attempt": attempts,
            "error": payload,
        }
        if (
            classification.retryable
            and policy.allows_retry(policy_attempts)
            and self._should_restore(policy, job=job, attempts=policy_attempts, error=payload)
        ):
            delay = policy.next_delay(policy_attempts, rng=self._random)
            wait_until = now + timedelta(seconds=delay)
            updated = self.store.update(
                job.job_id,
                {
                    **_RELEASE_PATCH,
                    "total_attempts": attempts,
                    "error": payload,
                    "wait_until": wait_until,
                    "task_status": task_status,
                    "log": log,
                },
                require_processing=True,
                claim=job.claim,
                event_type="retry_scheduled",
                details={
                    **details,
                    "delay_seconds": round(delay, 3),
                    "wait_until": wait_until.isoformat(),
                },
            )
            if not updated:
                return JobOutcome(job_id=job.job_id, status=JobOutcomeStatus.LOST)
            logger.warning(
                "Job %s (%s) attempt %d failed, retry in %.1fs: %s",
                job.job_id,
                job.slug,
                attempts,
                delay,
                payload["message"],
            )
            return JobOutcome(
                job_id=job.job_id,
                status=JobOutcomeStatus.RETRIED,
                error=payload,
                wait_until=wait_until,
            )

        updated = self.store.update(
            job.job_id,
            {
                **_RELEASE_PATCH,
                "total_attempts": attempts,
                "has_error": True,
                "error": payload,
                "task_status": task_status,
                "log": log,
            },
            require_processing=True,
            claim=job.claim,
            event_type="failed",
            details=details,
        )
        if not updated:
            return JobOutcome(job_id=job.job_id, status=JobOutcomeStatus.LOST)
        logger.error(
            "Job %s (%s) failed after %d attempt(s): %s",
            job.job_id,
            job.slug,
            attempts,
            payload["message"],
        )
        if definition is not None:
            self._invoke_callback(definition.on_fail, job_id=job.job_id, name="on_fail")
        return JobOutcome(job_id=job.job_id, status=JobOutcomeStatus.FAILED, error=payload)

    def _handle_canceled(self, *, job: JobView, execution: JobExecution | None) -> JobOutcome:
        patch: dict[str, Any] = dict(_RELEASE_PATCH)
        if execution is not None:
            task_status, log = execution.snapshot()
            patch.update({"task_status": task_status, "log": log})
        self.store.update(
            job.job_id,
            patch,
            require_processing=True,
            claim=job.claim,
            event_type="cancel_observed",
        )
        logger.info("Job %s (%s) canceled", job.job_id, job.slug)
        return JobOutcome(job_id=job.job_id, status=JobOutcomeStatus.CANCELED)

    def _should_restore(
        self,
        policy: RetryPolicy,
        *,
        job: JobView,
        attempts: int,
        error: dict[str, Any],
    ) -> bool:
        if policy.should_restore is None:
            return True
        try:
            restore = policy.should_restore(
                RestoreContext(job=job, attempts=attempts, error=error),
            )
        except Exception:
            logger.exception("should_restore predicate failed for job %s", job.job_id)
            return True
        if not restore:
            logger.info("Job %s retry vetoed by should_restore", job.job_id)
        return bool(restore)

    def _invoke_callback(self, callback: JobCallback | None, *, job_id: str, name: str) -> None:
        if callback is None:
            return
        job = self.store.get_job(job_id)
        if job is None:
            return
        try:
            callback(job)
        except Exception:
            logger.exception("%s callback failed for job %s", name, job_id)


def _policy_for(
    error: QueueworksError,
    *,
    definition: Definition | None,
    attempts: int,
) -> tuple[RetryPolicy, int]:
    """Policy governing this failure plus the attempt count it is measured against."""

    if isinstance(error, StepFailedError):
        return error.policy, error.attempts
    return resolve_policy(definition.retries if definition is not None else None), attempts
