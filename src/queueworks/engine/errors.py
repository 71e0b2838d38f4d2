"""Error taxonomy for the job engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from queueworks.engine.retry import RetryPolicy


class QueueworksError(Exception):
    """Base class for every engine error."""


class DefinitionError(QueueworksError):
    """Unknown or conflicting task/workflow definition.

    Never retried: a job that references a missing definition cannot succeed later.
    """


class DuplicateTaskError(DefinitionError):
    def __init__(self, slug: str) -> None:
        super().__init__(f"Task already registered: {slug!r}")
        self.slug = slug


class DuplicateWorkflowError(DefinitionError):
    def __init__(self, slug: str) -> None:
        super().__init__(f"Workflow already registered: {slug!r}")
        self.slug = slug


class HandlerError(QueueworksError):
    """User handler raised or reported a failure."""

    def __init__(self, message: str, *, step_id: str | None = None) -> None:
        super().__init__(message)
        self.step_id = step_id


class JobTimeoutError(HandlerError):
    """Job attempt exceeded its execution deadline."""


class StepFailedError(QueueworksError):
    """A workflow step (or the single task of a task job) failed.

    Carries the retry policy resolved for the step and the number of attempts the
    step has used so far, so the runner can decide between retry and terminal failure.
    """

    def __init__(
        self,
        *,
        step_id: str,
        task_slug: str | None,
        cause: QueueworksError,
        policy: RetryPolicy,
        attempts: int,
    ) -> None:
        super().__init__(f"Step {step_id!r} failed: {cause}")
        self.step_id = step_id
        self.task_slug = task_slug
        self.cause = cause
        self.policy = policy
        self.attempts = attempts


class JobCanceledError(QueueworksError):
    """Cancellation marker observed at a step boundary."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job canceled: {job_id}")
        self.job_id = job_id


class JobLostError(QueueworksError):
    """The runner no longer owns the job (record deleted or recovered elsewhere)."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job no longer held by this runner: {job_id}")
        self.job_id = job_id


class ClaimConflictError(QueueworksError):
    """Another runner claimed the job first."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job already claimed: {job_id}")
        self.job_id = job_id


class StoreUnavailableError(QueueworksError):
    """Persistence layer could not be reached; aborts the whole run."""


class ScheduleHookError(QueueworksError):
    """A before_schedule hook raised or returned a malformed decision."""

    def __init__(self, message: str, *, slug: str, hook: str) -> None:
        super().__init__(message)
        self.slug = slug
        self.hook = hook


def error_payload(error: BaseException) -> dict[str, Any]:
    """Structured error stored on the job record."""

    cause = error.cause if isinstance(error, StepFailedError) else error
    payload: dict[str, Any] = {
        "type": type(cause).__name__,
        "message": str(cause),
    }
    step_id = getattr(error, "step_id", None) or getattr(cause, "step_id", None)
    if step_id is not None:
        payload["step_id"] = step_id
    original = cause.__cause__
    if original is not None:
        payload["cause_type"] = type(original).__name__
        payload["cause_message"] = str(original)
    return payload
