from __future__ import annotations

import random

import pytest

from watcher.src.backoff import calculate_backoff


@pytest.mark.parametrize("attempts", [0, -1, -100])
def test_rejects_attempts_below_one(attempts: int) -> None:
    with pytest.raises(ValueError, match="attempts"):
        calculate_backoff(30.0, 1.0, 10.0, attempts)


@pytest.mark.parametrize("attempts", [1, 2, 5, 63, 64, 1000])
def test_returns_interval_when_interval_at_or_below_minimum(attempts: int) -> None:
    assert calculate_backoff(1.0, 1.0, 30.0, attempts) == 1.0
    assert calculate_backoff(0.5, 1.0, 30.0, attempts) == 0.5


def test_first_attempt_returns_minimum() -> None:
    assert calculate_backoff(30.0, 2.0, 10.0, 1, rand=lambda: 0.99) == 2.0


def test_second_attempt_draws_between_minimum_and_doubled_ceiling() -> None:
    # minimum 1s -> 1000ms * 2**2 = 4000ms ceiling for attempt 2.
    assert calculate_backoff(30.0, 1.0, 10.0, 2, rand=lambda: 0.0) == pytest.approx(1.0)
    assert calculate_backoff(30.0, 1.0, 10.0, 2, rand=lambda: 1.0) == pytest.approx(4.0)
    assert calculate_backoff(30.0, 1.0, 10.0, 2, rand=lambda: 0.5) == pytest.approx(2.5)


def test_ceiling_clamped_to_maximum() -> None:
    assert calculate_backoff(60.0, 1.0, 5.0, 10, rand=lambda: 1.0) == pytest.approx(5.0)


def test_ceiling_clamped_to_interval_when_interval_below_maximum() -> None:
    assert calculate_backoff(3.0, 1.0, 30.0, 10, rand=lambda: 1.0) == pytest.approx(3.0)


def test_huge_attempt_counts_do_not_overflow() -> None:
    assert calculate_backoff(20.0, 1.0, 15.0, 10_000, rand=lambda: 1.0) == pytest.approx(15.0)


def test_sub_millisecond_minimum_uses_one_millisecond_base() -> None:
    # max(1ms, 0ms) * 2**3 = 8ms ceiling.
    assert calculate_backoff(1.0, 0.0, 1.0, 3, rand=lambda: 1.0) == pytest.approx(0.008)


def test_output_always_within_bounds() -> None:
    rng = random.Random(1234)
    for _ in range(500):
        minimum = rng.uniform(0.0, 5.0)
        maximum = minimum + rng.uniform(0.0, 60.0)
        interval = minimum + rng.uniform(0.001, 120.0)
        attempts = rng.randint(1, 80)

        delay = calculate_backoff(interval, minimum, maximum, attempts, rand=rng.random)

        assert minimum - 1e-9 <= delay <= min(interval, maximum) + 1e-9


def test_expected_ceiling_grows_with_attempts() -> None:
    ceilings = [
        calculate_backoff(600.0, 1.0, 600.0, attempts, rand=lambda: 1.0)
        for attempts in range(2, 10)
    ]

    assert ceilings == sorted(ceilings)
    assert ceilings[-1] == pytest.approx(512.0)
