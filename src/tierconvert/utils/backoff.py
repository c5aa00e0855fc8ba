"""Exponential backoff delay computation."""

import random
from collections.abc import Callable

from tierconvert.config.constants import DEFAULT_RETRY_JITTER


def retry_delay(
    attempt: int,
    base: float,
    cap: float,
    jitter: float = DEFAULT_RETRY_JITTER,
    rand: Callable[[], float] = random.random,
) -> float:
    """Compute the delay before retry number ``attempt`` (0-based).

    The delay is ``base * 2**attempt`` plus up to ``jitter`` of that value,
    capped at ``cap``. Jitter is drawn once per call and only ever adds time,
    so the uncapped values never shrink as ``attempt`` grows.

    Args:
        attempt: Zero-based retry index
        base: Base delay in seconds
        cap: Maximum delay in seconds
        jitter: Fraction of the exponential delay added as random jitter
        rand: Source of uniform randoms in [0, 1), injectable for tests

    Returns:
        Delay in seconds, within ``[0, cap]``
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    if base <= 0 or cap <= 0:
        return 0.0

    exponential = base * (2**attempt)
    if exponential >= cap:
        return cap
    return min(cap, exponential + exponential * jitter * rand())
