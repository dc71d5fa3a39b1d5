from __future__ import annotations

import random
from collections.abc import Callable

_MAX_DOUBLINGS = 63


def calculate_backoff(
    interval: float,
    minimum: float,
    maximum: float,
    attempts: int,
    *,
    rand: Callable[[], float] | None = None,
) -> float:
    """Return a randomized exponential backoff, in seconds, for a periodic operation.

    ``interval`` is the nominal period of the operation.  When it is already at
    or below ``minimum`` it is returned unchanged.  The first attempt waits
    exactly ``minimum``; later attempts draw uniformly between ``minimum`` and
    an exponentially growing ceiling (``minimum * 2**attempts``) that never
    exceeds ``min(interval, maximum)``.  The jitter keeps many clients that
    failed together from retrying in lockstep.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got: {attempts}")

    if interval <= minimum:
        return interval

    if attempts == 1:
        return minimum

    ceiling_ms = min(interval, maximum) * 1000.0
    minimum_ms = minimum * 1000.0
    bound_ms = max(1.0, minimum_ms) * float(1 << min(attempts, _MAX_DOUBLINGS))
    if bound_ms > ceiling_ms:
        bound_ms = ceiling_ms

    draw = rand or random.random
    return (minimum_ms + draw() * (bound_ms - minimum_ms)) / 1000.0
