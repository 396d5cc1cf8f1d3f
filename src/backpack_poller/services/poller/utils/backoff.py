"""Reconnect delay policy with capped exponential backoff."""

import random
from typing import Optional

DEFAULT_BASE_DELAY_MS = 1_000
DEFAULT_MAX_DELAY_MS = 30_000
DEFAULT_MAX_EXPONENT = 5
DEFAULT_JITTER_MS = 300


def exponential_term_ms(
    attempt: int,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    max_exponent: int = DEFAULT_MAX_EXPONENT
) -> int:
    """Uncapped exponential term: ``base * 2 ** min(attempt, max_exponent)``."""
    return base_delay_ms * 2 ** min(attempt, max_exponent)


def capped_delay_ms(
    attempt: int,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
    max_exponent: int = DEFAULT_MAX_EXPONENT
) -> int:
    """Exponential term limited to ``max_delay_ms``, before jitter."""
    return min(max_delay_ms, exponential_term_ms(attempt, base_delay_ms, max_exponent))


def reconnect_delay_ms(
    attempt: int,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
    max_exponent: int = DEFAULT_MAX_EXPONENT,
    jitter_ms: int = DEFAULT_JITTER_MS,
    rng: Optional[random.Random] = None
) -> int:
    """
    Compute the delay before reconnect attempt ``attempt``.

    Jitter is a uniform integer in ``[0, jitter_ms)`` added *after* the cap,
    so the result can exceed ``max_delay_ms`` by up to ``jitter_ms - 1``.

    Args:
        attempt: Reconnect counter after increment (1 for the first retry)
        base_delay_ms: Base delay in milliseconds
        max_delay_ms: Cap applied to the exponential term
        max_exponent: Largest exponent used for the doubling
        jitter_ms: Exclusive upper bound of the random jitter; 0 disables it
        rng: Random source, mainly for tests

    Returns:
        Delay in milliseconds
    """
    capped = capped_delay_ms(attempt, base_delay_ms, max_delay_ms, max_exponent)
    if jitter_ms <= 0:
        return capped

    rng = rng or random
    return capped + rng.randrange(jitter_ms)
