"""
Tests for the retry policy.
"""

import random

import pytest

from provisioner.core.errors import InvalidConfigError, StepApplyError, StepCancelledError
from provisioner.core.reliability.retry import RetryPolicy


def _policy(**kwargs) -> RetryPolicy:
    sleeps: list[float] = []
    policy = RetryPolicy(sleep=sleeps.append, rng=random.Random(7), **kwargs)
    policy.sleeps = sleeps  # type: ignore[attr-defined]
    return policy


class Flaky:
    def __init__(self, failures: int, exc: Exception | None = None):
        self.failures = failures
        self.exc = exc or StepApplyError("mirror unreachable")
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "done"


class TestDelays:
    def test_exponential_with_cap(self):
        policy = _policy(base_delay=1.0, max_delay=5.0, jitter=0.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_bounds(self):
        policy = _policy(base_delay=2.0, jitter=0.5)
        for _ in range(50):
            assert 2.0 <= policy.delay_for(1) <= 3.0

    def test_at_least_one_attempt(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestCall:
    def test_succeeds_after_retries(self):
        policy = _policy(max_attempts=3, jitter=0.0)
        fn = Flaky(failures=2)
        assert policy.call(fn, label="apt") == "done"
        assert fn.calls == 3
        assert policy.sleeps == [1.0, 2.0]

    def test_gives_up_with_last_error(self):
        policy = _policy(max_attempts=2)
        fn = Flaky(failures=5)
        with pytest.raises(StepApplyError, match="mirror unreachable"):
            policy.call(fn)
        assert fn.calls == 2

    def test_os_errors_are_retried(self):
        fn = Flaky(failures=1, exc=ConnectionResetError("reset by peer"))
        assert _policy().call(fn) == "done"

    @pytest.mark.parametrize("exc", [
        InvalidConfigError("bad port"),
        StepCancelledError("cancelled"),
        KeyError("x"),
    ])
    def test_not_retried(self, exc):
        fn = Flaky(failures=1, exc=exc)
        with pytest.raises(type(exc)):
            _policy().call(fn)
        assert fn.calls == 1
