"""Test ConcurrencyLimit and ExponentialBackoff."""

import random

import pytest

from pullman.worker.backoff import ExponentialBackoff
from pullman.worker.limits import ConcurrencyLimit


def test_concurrency_limit_claim():
    """Test that claiming slots increases the claimed count."""
    limit = ConcurrencyLimit(limit=3)

    assert limit.claimed == 0

    limit.claim()
    assert limit.claimed == 1

    limit.claim()
    assert limit.claimed == 2


def test_concurrency_limit_free_minimum():
    """Test that freeing below zero keeps claimed at 0."""
    limit = ConcurrencyLimit(limit=3)

    limit.free()
    assert limit.claimed == 0


def test_concurrency_limit_try_claim():
    """Test that try_claim refuses once the limit is reached."""
    limit = ConcurrencyLimit(limit=2)

    assert limit.try_claim()
    assert limit.try_claim()
    assert not limit.try_claim()
    assert limit.available() == 0
    assert not limit.satisfied()

    limit.free()
    assert limit.available() == 1
    assert limit.satisfied()


def test_concurrency_limit_context_manager():
    limit = ConcurrencyLimit(limit=1)

    with limit:
        assert limit.claimed == 1

    assert limit.claimed == 0


def test_concurrency_limit_invalid():
    with pytest.raises(ValueError):
        ConcurrencyLimit(limit=0)


def test_backoff_grows_exponentially():
    """Test that delays double up to the maximum, without jitter."""
    backoff = ExponentialBackoff(initial=1.0, maximum=5.0, factor=2.0, jitter=0.0)

    assert [backoff.next_delay() for _ in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_backoff_reset():
    backoff = ExponentialBackoff(initial=1.0, maximum=5.0, factor=2.0, jitter=0.0)
    backoff.next_delay()
    backoff.next_delay()

    backoff.reset()

    assert backoff.next_delay() == 1.0


def test_backoff_jitter_bounds():
    """Test that jittered delays stay within the jitter band and under the maximum."""
    backoff = ExponentialBackoff(initial=1.0, maximum=4.0, factor=2.0, jitter=0.5, rng=random.Random(7))

    for _ in range(50):
        backoff.reset()
        delay = backoff.next_delay()
        assert 0.5 <= delay <= 1.5

    for _ in range(50):
        assert backoff.next_delay() <= 4.0


def test_backoff_many_failures_dont_overflow():
    backoff = ExponentialBackoff(initial=0.5, maximum=60.0, jitter=0.0)

    for _ in range(2000):
        delay = backoff.next_delay()

    assert delay == 60.0


def test_backoff_invalid_jitter():
    with pytest.raises(ValueError):
        ExponentialBackoff(jitter=1.5)
