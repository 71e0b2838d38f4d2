"""Deterministic failure classification for runner retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from queueworks.engine.errors import (
    DefinitionError,
    HandlerError,
    JobCanceledError,
    JobTimeoutError,
    StepFailedError,
)
from queueworks.engine.models import FailureClass

_RETRYABLE: frozenset[FailureClass] = frozenset(
    {FailureClass.HANDLER, FailureClass.TIMEOUT, FailureClass.STEP},
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    retryable: bool
    reason_code: str

    def to_event_details(self) -> dict[str, object]:
        return {
            "failure_class": self.failure_class.value,
            "retryable": self.retryable,
            "reason_code": self.reason_code,
        }


def classify_failure(error: BaseException) -> FailureClassification:
    """Classify an exception raised out of one job attempt."""

    cause = error.cause if isinstance(error, StepFailedError) else error

    if isinstance(cause, DefinitionError):
        return _classified(FailureClass.DEFINITION, "definition_unresolved")
    if isinstance(cause, JobCanceledError):
        return _classified(FailureClass.CANCELED, "canceled")
    if isinstance(cause, JobTimeoutError):
        return _classified(FailureClass.TIMEOUT, "deadline_exceeded")
    if isinstance(error, StepFailedError):
        return _classified(FailureClass.STEP, f"step_failed:{error.step_id}")
    if isinstance(cause, HandlerError):
        return _classified(FailureClass.HANDLER, "handler_failed")
    return _classified(FailureClass.HANDLER, f"unexpected:{type(cause).__name__}")


def _classified(failure_class: FailureClass, reason_code: str) -> FailureClassification:
    return FailureClassification(
        failure_class=failure_class,
        retryable=failure_class in _RETRYABLE,
        reason_code=reason_code,
    )
