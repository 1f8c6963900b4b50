from __future__ import annotations

import pytest

from engine.retry import RetryPolicy, backoff_delay, retry


class _Flaky:
    def __init__(self, failures: int, exc_type=RuntimeError) -> None:
        self.failures = failures
        self.exc_type = exc_type
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_type(f"failure {self.calls}")
        return "ok"


def test_fail_fail_succeed_is_invoked_exactly_three_times() -> None:
    operation = _Flaky(failures=2)
    delays: list[float] = []

    result = retry(operation, max_attempts=3, base_delay=0.5, sleep=delays.append, jitter=lambda: 1.0)

    assert result == "ok"
    assert operation.calls == 3
    assert delays == [0.5, 1.0]


def test_exhausted_budget_reraises_last_error() -> None:
    operation = _Flaky(failures=5)

    with pytest.raises(RuntimeError, match="failure 3"):
        retry(operation, max_attempts=3, base_delay=0, sleep=lambda _s: None)

    assert operation.calls == 3


def test_should_retry_false_stops_after_first_attempt() -> None:
    operation = _Flaky(failures=5, exc_type=PermissionError)
    sleeps: list[float] = []

    with pytest.raises(PermissionError):
        retry(
            operation,
            max_attempts=3,
            base_delay=1.0,
            should_retry=lambda exc: not isinstance(exc, PermissionError),
            sleep=sleeps.append,
        )

    assert operation.calls == 1
    assert sleeps == []


def test_non_idempotent_operation_runs_once_unless_opted_in() -> None:
    once = _Flaky(failures=1)
    with pytest.raises(RuntimeError):
        retry(once, max_attempts=3, base_delay=0, idempotent=False, sleep=lambda _s: None)
    assert once.calls == 1

    opted_in = _Flaky(failures=1)
    assert (
        retry(
            opted_in,
            max_attempts=3,
            base_delay=0,
            idempotent=False,
            allow_non_idempotent=True,
            sleep=lambda _s: None,
        )
        == "ok"
    )
    assert opted_in.calls == 2


def test_invalid_budget_is_rejected() -> None:
    with pytest.raises(ValueError):
        retry(lambda: None, max_attempts=0)


def test_backoff_delay_doubles_within_jitter_bounds() -> None:
    for attempt, ceiling in ((1, 2.0), (2, 4.0), (3, 8.0)):
        delay = backoff_delay(attempt, 2.0)
        assert ceiling * 0.5 <= delay <= ceiling


def test_policy_from_config_clamps_values() -> None:
    policy = RetryPolicy.from_config({"retry": {"max_attempts": 0, "base_delay": -3}})

    assert policy.max_attempts == 1
    assert policy.base_delay == 0.0
    assert RetryPolicy.from_config(None) == RetryPolicy()
