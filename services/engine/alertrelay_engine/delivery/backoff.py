"""Retry delay computation for failed deliveries."""

import random
from collections.abc import Callable


def retry_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter_ratio: float = 0.25,
    retry_after: float | None = None,
    previous_delay: float = 0.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Delay before the next attempt.

    ``min(max_delay, max(base * 2^(attempt-1) * (1 + jitter * U[0,1)),
    retry_after, previous_delay))``. With ``jitter_ratio <= 1`` and the
    previous delay as a floor, delays never shrink and never exceed the cap.

    Args:
        attempt: Attempt number that just failed (1-based)
        base_delay: First retry delay in seconds
        max_delay: Cap in seconds
        jitter_ratio: Fractional random extra delay
        retry_after: Server-requested minimum delay, if any
        previous_delay: Delay applied before this attempt
        rand: Uniform [0, 1) source

    Returns:
        Delay in seconds
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    exponential = base_delay * (2 ** (attempt - 1))
    delay = exponential * (1.0 + jitter_ratio * rand())
    delay = max(delay, retry_after or 0.0, previous_delay)
    return min(max_delay, delay)
