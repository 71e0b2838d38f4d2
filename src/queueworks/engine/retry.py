"""Retry policies and backoff strategies."""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from queueworks.engine.models import JobView


class BackoffType(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True, slots=True)
class Backoff:
    """Delay applied before a failed job becomes eligible again.

    ``jitter`` is a fraction of the computed delay added on top of it at random, so
    the jittered delay never drops below the deterministic one.
    """

    type: BackoffType = BackoffType.FIXED
    delay_seconds: float = 0.0
    max_delay_seconds: float | None = None
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.delay_seconds < 0:
            raise ValueError("Backoff delay_seconds must be >= 0.")
        if self.max_delay_seconds is not None and self.max_delay_seconds < self.delay_seconds:
            raise ValueError("Backoff max_delay_seconds must be >= delay_seconds.")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("Backoff jitter must be within [0, 1].")

    def delay_for(self, attempt: int, *, rng: random.Random | None = None) -> float:
        """Delay in seconds after the given failed attempt (1-based)."""

        attempt = max(attempt, 1)
        if self.type == BackoffType.EXPONENTIAL:
            delay = self.delay_seconds * (2 ** (attempt - 1))
        else:
            delay = self.delay_seconds
        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)
        if self.jitter > 0 and delay > 0:
            delay += (rng or random).uniform(0, delay * self.jitter)
        return delay


@dataclass(frozen=True, slots=True)
class RestoreContext:
    """Arguments passed to a policy's ``should_restore`` predicate."""

    job: JobView
    attempts: int
    error: dict[str, Any]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How many times a job may execute and how long to wait in between.

    ``attempts`` counts executions including the first one and is required; there
    is no unbounded retry.
    """

    attempts: int
    backoff: Backoff = field(default_factory=Backoff)
    should_restore: Callable[[RestoreContext], bool] | None = None

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("RetryPolicy.attempts must be >= 1.")

    def allows_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.attempts

    def next_delay(self, attempts_made: int, *, rng: random.Random | None = None) -> float:
        return self.backoff.delay_for(attempts_made, rng=rng)


DEFAULT_RETRY_POLICY = RetryPolicy(attempts=1)


def fixed(attempts: int, delay_seconds: float = 0.0) -> RetryPolicy:
    return RetryPolicy(
        attempts=attempts,
        backoff=Backoff(type=BackoffType.FIXED, delay_seconds=delay_seconds),
    )


def exponential(
    attempts: int,
    delay_seconds: float,
    *,
    max_delay_seconds: float | None = None,
    jitter: float = 0.0,
) -> RetryPolicy:
    return RetryPolicy(
        attempts=attempts,
        backoff=Backoff(
            type=BackoffType.EXPONENTIAL,
            delay_seconds=delay_seconds,
            max_delay_seconds=max_delay_seconds,
            jitter=jitter,
        ),
    )


def coerce_policy(value: RetryPolicy | int | None) -> RetryPolicy | None:
    """Accept a bare attempt count as shorthand for a no-delay policy."""

    if value is None or isinstance(value, RetryPolicy):
        return value
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"Unsupported retry policy value: {value!r}")
    return RetryPolicy(attempts=value)


def resolve_policy(*candidates: RetryPolicy | None) -> RetryPolicy:
    """First non-empty policy wins; candidates go from most to least specific."""

    for candidate in candidates:
        if candidate is not None:
            return candidate
    return DEFAULT_RETRY_POLICY
