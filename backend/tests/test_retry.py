"""Bounded retry with exponential backoff."""

import pytest

from isoscan.utils.retry import backoff_delay, retry_call


def test_backoff_grows_and_caps():
    assert 1.0 <= backoff_delay(1, 1.0, 10.0) <= 1.25
    assert 4.0 <= backoff_delay(3, 1.0, 10.0) <= 5.0
    assert 10.0 <= backoff_delay(8, 1.0, 10.0) <= 12.5


def test_succeeds_after_transient_failures():
    calls, sleeps = [], []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("try again")
        return "ok"

    assert retry_call(flaky, attempts=5, base_delay=0.1, sleep=sleeps.append) == "ok"
    assert len(calls) == 3
    assert len(sleeps) == 2
    assert sleeps[1] >= 0.2


def test_reraises_last_error_when_exhausted():
    sleeps = []

    def broken():
        raise ConnectionError("still down")

    with pytest.raises(ConnectionError, match="still down"):
        retry_call(broken, attempts=3, sleep=sleeps.append)
    assert len(sleeps) == 2


def test_only_listed_errors_are_retried():
    calls = []

    def bug():
        calls.append(1)
        raise KeyError("bug")

    with pytest.raises(KeyError):
        retry_call(bug, attempts=5, retry_on=(ConnectionError,), sleep=lambda s: None)
    assert len(calls) == 1


def test_attempts_must_be_positive():
    with pytest.raises(ValueError):
        retry_call(lambda: None, attempts=0)
