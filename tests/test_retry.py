from __future__ import annotations

import random

import allure
import pytest

from queueworks.engine.retry import (
    DEFAULT_RETRY_POLICY,
    Backoff,
    BackoffType,
    RetryPolicy,
    coerce_policy,
    exponential,
    fixed,
    resolve_policy,
)

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Retry & Backoff"),
]


def test_fixed_backoff_is_constant() -> None:
    policy = fixed(4, 7.0)

    assert [policy.next_delay(attempt) for attempt in (1, 2, 3)] == [7.0, 7.0, 7.0]


def test_exponential_backoff_doubles_and_caps() -> None:
    policy = exponential(6, 5.0, max_delay_seconds=30.0)

    assert [policy.next_delay(attempt) for attempt in (1, 2, 3, 4, 5)] == [
        5.0,
        10.0,
        20.0,
        30.0,
        30.0,
    ]


def test_jitter_never_drops_below_deterministic_delay() -> None:
    backoff = Backoff(type=BackoffType.EXPONENTIAL, delay_seconds=2.0, jitter=0.5)
    rng = random.Random(7)

    previous = 0.0
    for attempt in range(1, 6):
        base = 2.0 * 2 ** (attempt - 1)
        delay = backoff.delay_for(attempt, rng=rng)
        assert base <= delay <= base * 1.5
        assert delay >= previous
        previous = base


def test_allows_retry_counts_executions() -> None:
    policy = RetryPolicy(attempts=3)

    assert policy.allows_retry(1)
    assert policy.allows_retry(2)
    assert not policy.allows_retry(3)


def test_default_policy_runs_once() -> None:
    assert DEFAULT_RETRY_POLICY.attempts == 1
    assert not DEFAULT_RETRY_POLICY.allows_retry(1)


def test_policy_requires_positive_attempts() -> None:
    with pytest.raises(ValueError, match="attempts must be >= 1"):
        RetryPolicy(attempts=0)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"delay_seconds": -1.0},
        {"delay_seconds": 10.0, "max_delay_seconds": 5.0},
        {"jitter": 1.5},
    ],
)
def test_backoff_rejects_invalid_values(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError, match="Backoff"):
        Backoff(**kwargs)


def test_coerce_policy_accepts_attempt_count() -> None:
    assert coerce_policy(None) is None
    assert coerce_policy(4) == RetryPolicy(attempts=4)
    with pytest.raises(TypeError):
        coerce_policy(True)


def test_resolve_policy_prefers_most_specific() -> None:
    step = fixed(2)
    task = fixed(3)
    workflow = fixed(4)

    assert resolve_policy(step, task, workflow) is step
    assert resolve_policy(None, task, workflow) is task
    assert resolve_policy(None, None, workflow) is workflow
    assert resolve_policy(None, None, None) is DEFAULT_RETRY_POLICY
