"""Tests for backoff delay computation."""

from __future__ import annotations

import random

import pytest

from itemsync.core.backoff import (
    JITTER_HIGH,
    JITTER_LOW,
    BackoffStrategy,
    apply_jitter,
    base_delay,
    calculate_delay,
)


def test_exponential_doubles_until_capped():
    delays = [
        base_delay(n, initial_delay=0.1, max_delay=1.0, multiplier=2.0) for n in range(1, 7)
    ]
    assert delays == pytest.approx([0.1, 0.2, 0.4, 0.8, 1.0, 1.0])


def test_linear_grows_by_initial_delay():
    delays = [
        base_delay(n, initial_delay=0.5, max_delay=10.0, strategy=BackoffStrategy.LINEAR)
        for n in range(1, 4)
    ]
    assert delays == pytest.approx([0.5, 1.0, 1.5])


def test_constant_never_grows():
    delays = {
        base_delay(n, initial_delay=0.25, max_delay=10.0, strategy=BackoffStrategy.CONSTANT)
        for n in range(1, 10)
    }
    assert delays == {0.25}


def test_retry_number_is_one_indexed():
    with pytest.raises(ValueError, match="1-indexed"):
        base_delay(0, initial_delay=1.0, max_delay=10.0)


def test_jitter_stays_within_bounds():
    rng = random.Random(42)
    samples = [apply_jitter(2.0, rng) for _ in range(500)]
    assert min(samples) >= 2.0 * JITTER_LOW
    assert max(samples) <= 2.0 * JITTER_HIGH
    assert len(set(samples)) > 1


def test_calculate_delay_without_jitter_is_exact():
    delay = calculate_delay(3, initial_delay=1.0, max_delay=30.0, jitter=False)
    assert delay == 4.0


def test_calculate_delay_with_seeded_rng_is_reproducible():
    first = calculate_delay(2, initial_delay=1.0, max_delay=30.0, rng=random.Random(7))
    second = calculate_delay(2, initial_delay=1.0, max_delay=30.0, rng=random.Random(7))
    assert first == second
    assert 2.0 * JITTER_LOW <= first <= 2.0 * JITTER_HIGH
