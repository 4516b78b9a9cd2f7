"""Shared backoff delay computation with jitter.

Centralizes the delay formula used by the retry engine so every caller
(sync fetches, token endpoint calls) grows its delays the same way.
"""

from __future__ import annotations

import random
from enum import Enum

JITTER_LOW = 0.75
JITTER_HIGH = 1.25


class BackoffStrategy(str, Enum):
    """How the delay grows between consecutive retries."""

    CONSTANT = "constant"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


def base_delay(
    retry_number: int,
    *,
    initial_delay: float,
    max_delay: float,
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL,
    multiplier: float = 2.0,
) -> float:
    """Pre-jitter delay before the ``retry_number``-th retry (1-indexed).

    Formulas, each capped at ``max_delay``:

    - constant: ``initial_delay``
    - linear: ``initial_delay * retry_number``
    - exponential: ``initial_delay * multiplier ** (retry_number - 1)``
    """
    if retry_number < 1:
        msg = "retry_number is 1-indexed"
        raise ValueError(msg)

    if strategy is BackoffStrategy.CONSTANT:
        delay = initial_delay
    elif strategy is BackoffStrategy.LINEAR:
        delay = initial_delay * retry_number
    else:
        delay = initial_delay * (multiplier ** (retry_number - 1))

    return max(0.0, min(delay, max_delay))


def apply_jitter(delay: float, rng: random.Random | None = None) -> float:
    """Scale ``delay`` by a uniform factor in [0.75, 1.25]."""
    uniform = rng.uniform if rng is not None else random.uniform
    return max(0.0, delay * uniform(JITTER_LOW, JITTER_HIGH))


def calculate_delay(
    retry_number: int,
    *,
    initial_delay: float,
    max_delay: float,
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL,
    multiplier: float = 2.0,
    jitter: bool = True,
    rng: random.Random | None = None,
) -> float:
    delay = base_delay(
        retry_number,
        initial_delay=initial_delay,
        max_delay=max_delay,
        strategy=strategy,
        multiplier=multiplier,
    )
    if jitter:
        delay = apply_jitter(delay, rng)
    return delay
