"""Execution of one claimed job: step tracking, handler capabilities, JSON step lists.

Every unit of handler code runs as a *step* keyed by a step id. A step that
completed in an earlier attempt is never executed again; its recorded output is
returned instead, which is what makes a retried workflow resume rather than restart.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from queueworks.engine.definitions import (
    Definition,
    Definitions,
    TaskDefinition,
    TaskHandler,
    WorkflowDefinition,
)
from queueworks.engine.errors import (
    HandlerError,
    JobCanceledError,
    JobLostError,
    JobTimeoutError,
    QueueworksError,
    StepFailedError,
    StoreUnavailableError,
    error_payload,
)
from queueworks.engine.models import JobLogEntry, JobView, LogStatus, StepStatus
from queueworks.engine.retry import RetryPolicy, coerce_policy, resolve_policy
from queueworks.engine.store import JobStore

logger = logging.getLogger(__name__)


class JobContext:
    """Read-only view of the running job handed to handler code."""

    __slots__ = ("_execution", "step_id")

    def __init__(self, execution: JobExecution, *, step_id: str | None = None) -> None:
        self._execution = execution
        self.step_id = step_id

    @property
    def job(self) -> JobView:
        return self._execution.job

    @property
    def job_id(self) -> str:
        return self._execution.job.job_id

    @property
    def input(self) -> dict[str, Any]:
        return dict(self._execution.job.input)

    @property
    def queue(self) -> str:
        return self._execution.job.queue

    @property
    def attempt(self) -> int:
        """1-based attempt number of the whole job."""

        return self._execution.job.total_attempts + 1

    def output_of(self, step_id: str) -> Any:
        """Output of an already completed step; ``KeyError`` otherwise."""

        status = self._execution.step_status(step_id)
        if status is None or not status.complete:
            raise KeyError(step_id)
        return status.output

    def completed_steps(self) -> dict[str, Any]:
        return self._execution.completed_outputs()

    def is_canceled(self) -> bool:
        return self._execution.store.is_canceled(self.job_id)


@dataclass(frozen=True, slots=True)
class StepCall:
    """One named sub-task call for :meth:`TasksCapability.invoke_parallel`."""

    task_slug: str
    step_id: str
    input: Mapping[str, Any] = field(default_factory=dict)
    retries: RetryPolicy | int | None = None


class TasksCapability:
    """Runs registered tasks as steps of the calling workflow."""

    def __init__(self, execution: JobExecution) -> None:
        self._execution = execution

    def invoke(
        self,
        task_slug: str,
        step_id: str,
        *,
        input: Mapping[str, Any] | None = None,  # noqa: A002
        retries: RetryPolicy | int | None = None,
    ) -> Any:
        """Run ``task_slug`` as step ``step_id`` and return its output.

        Raises ``StepFailedError`` when the step fails; the job then goes through
        the retry path and resumes at this step on the next attempt.
        """

        task = self._execution.definitions.resolve_task(task_slug)
        return self._execution.run_step(
            step_id,
            task_slug=task.slug,
            handler=task.handler,
            input=input or {},
            policy=resolve_policy(
                coerce_policy(retries),
                task.retries,
                self._execution.fallback_policy,
            ),
        )

    def invoke_parallel(self, calls: Iterable[StepCall]) -> list[Any]:
        """Run several steps concurrently; outputs come back in call order.

        Every call runs to its end. The first failure in call order is raised once
        all calls finished, so successful siblings are recorded as complete.
        """

        pending = list(calls)
        if not pending:
            return []
        step_ids = [call.step_id for call in pending]
        if len(set(step_ids)) != len(step_ids):
            raise HandlerError(f"Duplicate step ids in parallel call: {step_ids}")

        with ThreadPoolExecutor(
            max_workers=len(pending),
            thread_name_prefix=f"queueworks-{self._execution.job.job_id[:8]}",
        ) as executor:
            futures = [
                executor.submit(
                    self.invoke,
                    call.task_slug,
                    call.step_id,
                    input=call.input,
                    retries=call.retries,
                )
                for call in pending
            ]
        outputs: list[Any] = []
        first_error: BaseException | None = None
        for future in futures:
            error = future.exception()
            if error is not None:
                first_error = first_error or error
                outputs.append(None)
            else:
                outputs.append(future.result())
        if first_error is not None:
            raise first_error
        return outputs


class InlineTaskCapability:
    """Runs an ad-hoc, unregistered handler as a tracked step."""

    def __init__(self, execution: JobExecution) -> None:
        self._execution = execution

    def __call__(
        self,
        step_id: str,
        handler: TaskHandler,
        *,
        input: Mapping[str, Any] | None = None,  # noqa: A002
        retries: RetryPolicy | int | None = None,
    ) -> Any:
        return self._execution.run_step(
            step_id,
            task_slug=None,
            handler=handler,
            input=input or {},
            policy=resolve_policy(coerce_policy(retries), self._execution.fallback_policy),
        )


class JobExecution:
    """State of one attempt of one claimed job.

    Step status and log updates are serialized through a lock and persisted after
    every step transition, so parallel sub-tasks of the same job never lose updates.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        job: JobView,
        definitions: Definitions,
        definition: Definition,
        clock: Callable[[], datetime],
    ) -> None:
        self.store = store
        self.job = job
        self.definitions = definitions
        self.definition = definition
        self.clock = clock
        self.fallback_policy = (
            definition.retries if isinstance(definition, WorkflowDefinition) else None
        )
        self._task_status = {
            step_id: status.copy() for step_id, status in job.task_status.items()
        }
        self._log = list(job.log)
        self._lock = threading.RLock()
        self._aborted = threading.Event()

    def execute(self) -> None:
        """Run the job body to the end; raises on failure."""

        if isinstance(self.definition, TaskDefinition):
            self._run_task_job(self.definition)
        elif self.definition.is_static:
            self._run_static_workflow(self.definition)
        else:
            self._run_function_workflow(self.definition)

    def abort(self) -> None:
        """Stop recording results; used when the job deadline expired."""

        with self._lock:
            self._aborted.set()

    def snapshot(self) -> tuple[dict[str, StepStatus], list[JobLogEntry]]:
        with self._lock:
            return (
                {step_id: status.copy() for step_id, status in self._task_status.items()},
                list(self._log),
            )

    def step_status(self, step_id: str) -> StepStatus | None:
        with self._lock:
            return self._task_status.get(step_id)

    def completed_outputs(self) -> dict[str, Any]:
        with self._lock:
            return {
                step_id: status.output
                for step_id, status in self._task_status.items()
                if status.complete
            }

    def check_boundary(self) -> None:
        if self._aborted.is_set():
            raise JobTimeoutError("Job deadline exceeded")
        if self.store.is_canceled(self.job.job_id):
            raise JobCanceledError(self.job.job_id)

    def run_step(  # noqa: PLR0913
        self,
        step_id: str,
        *,
        task_slug: str | None,
        handler: TaskHandler,
        input: Mapping[str, Any],  # noqa: A002
        policy: RetryPolicy,
    ) -> Any:
        """Execute one step unless it already completed in an earlier attempt."""

        with self._lock:
            status = self._task_status.get(step_id)
            if status is not None and status.complete:
                logger.debug("Job %s reuses output of step %s", self.job.job_id, step_id)
                return status.output

        self.check_boundary()
        with self._lock:
            if self._aborted.is_set():
                raise JobTimeoutError("Job deadline exceeded", step_id=step_id)
            status = self._task_status.setdefault(step_id, StepStatus(task_slug=task_slug))
            status.attempts += 1
            status.task_slug = task_slug
            attempts = status.attempts
            self._persist()

        started_at = self.clock()
        try:
            output = _unwrap_result(
                handler(dict(input), JobContext(self, step_id=step_id)),
                step_id=step_id,
            )
        except (JobCanceledError, JobLostError, JobTimeoutError, StoreUnavailableError):
            raise
        except QueueworksError as error:
            failure: QueueworksError = error
        except Exception as error:  # noqa: BLE001
            failure = HandlerError(str(error) or type(error).__name__, step_id=step_id)
            failure.__cause__ = error
        else:
            with self._lock:
                if self._aborted.is_set():
                    raise JobTimeoutError("Job deadline exceeded", step_id=step_id)
                status.complete = True
                status.output = output
                self._log.append(
                    JobLogEntry(
                        step_id=step_id,
                        task_slug=task_slug,
                        status=LogStatus.SUCCEEDED,
                        started_at=started_at,
                        completed_at=self.clock(),
                        output=output,
                    ),
                )
                self._persist()
            return output

        step_error = StepFailedError(
            step_id=step_id,
            task_slug=task_slug,
            cause=failure,
            policy=policy,
            attempts=attempts,
        )
        with self._lock:
            if not self._aborted.is_set():
                self._log.append(
                    JobLogEntry(
                        step_id=step_id,
                        task_slug=task_slug,
                        status=LogStatus.FAILED,
                        started_at=started_at,
                        completed_at=self.clock(),
                        error=error_payload(step_error),
                    ),
                )
        raise step_error

    def _persist(self) -> None:
        if self._aborted.is_set():
            return
        updated = self.store.update(
            self.job.job_id,
            {"task_status": dict(self._task_status), "log": list(self._log)},
            require_processing=True,
            claim=self.job.claim,
        )
        if not updated:
            raise JobLostError(self.job.job_id)

    def _run_task_job(self, task: TaskDefinition) -> None:
        self.run_step(
            task.slug,
            task_slug=task.slug,
            handler=task.handler,
            input=self.job.input,
            policy=resolve_policy(task.retries),
        )

    def _run_function_workflow(self, workflow: WorkflowDefinition) -> None:
        if workflow.handler is None:
            raise HandlerError(f"Workflow {workflow.slug!r} has no handler.")
        try:
            workflow.handler(
                dict(self.job.input),
                JobContext(self),
                TasksCapability(self),
                InlineTaskCapability(self),
            )
        except QueueworksError:
            raise
        except Exception as error:
            raise HandlerError(str(error) or type(error).__name__) from error

    def _run_static_workflow(self, workflow: WorkflowDefinition) -> None:
        for step in workflow.steps:
            context = JobContext(self, step_id=step.step_id)
            try:
                if step.condition is not None and not step.condition(context):
                    logger.debug("Job %s skips step %s", self.job.job_id, step.step_id)
                    continue
                step_input = dict(step.input(context)) if step.input is not None else self.job.input
            except QueueworksError:
                raise
            except Exception as error:
                raise HandlerError(
                    f"Step {step.step_id!r} input/condition failed: {error}",
                    step_id=step.step_id,
                ) from error

            task = self.definitions.resolve_task(step.task)
            self.run_step(
                step.step_id,
                task_slug=task.slug,
                handler=task.handler,
                input=step_input,
                policy=resolve_policy(step.retries, task.retries, workflow.retries),
            )
            if step.completes_job:
                return


def _unwrap_result(result: Any, *, step_id: str) -> Any:
    """Turn a handler return value into the step output, or raise its failure signal."""

    if result is None:
        return None
    if not isinstance(result, Mapping):
        raise HandlerError(
            f"Task handler must return a mapping, got {type(result).__name__}",
            step_id=step_id,
        )
    if result.get("state") == "failed":
        raise HandlerError(
            str(result.get("error_message") or "Task reported failure"),
            step_id=step_id,
        )
    return result.get("output")
