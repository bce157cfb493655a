"""Tests for delivery retry delays."""

import pytest

from alertrelay_engine.delivery.backoff import retry_delay


def test_exponential_without_jitter():
    delays = [retry_delay(n, 5.0, 300.0, jitter_ratio=0.0) for n in (1, 2, 3, 4)]
    assert delays == [5.0, 10.0, 20.0, 40.0]


def test_capped_at_max_delay():
    assert retry_delay(10, 5.0, 300.0, jitter_ratio=0.0) == 300.0


def test_jitter_bounds():
    assert retry_delay(1, 5.0, 300.0, jitter_ratio=0.25, rand=lambda: 0.0) == 5.0
    assert retry_delay(1, 5.0, 300.0, jitter_ratio=0.25, rand=lambda: 0.999) == pytest.approx(6.24875)


def test_retry_after_is_a_floor():
    assert retry_delay(1, 5.0, 300.0, jitter_ratio=0.0, retry_after=42.0) == 42.0
    assert retry_delay(1, 5.0, 300.0, jitter_ratio=0.0, retry_after=900.0) == 300.0


def test_delays_never_shrink():
    previous = 0.0
    rolls = iter([0.99, 0.0, 0.99, 0.0, 0.5, 0.0, 0.0, 0.0])
    for attempt in range(1, 9):
        delay = retry_delay(
            attempt, 5.0, 60.0, jitter_ratio=1.0, previous_delay=previous, rand=lambda: next(rolls)
        )
        assert previous <= delay <= 60.0
        previous = delay


def test_attempt_must_be_positive():
    with pytest.raises(ValueError):
        retry_delay(0, 5.0, 300.0)
