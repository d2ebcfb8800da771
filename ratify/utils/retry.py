from __future__ import annotations

import random


def compute_backoff(
    attempt: int,
    base: float = 1.0,
    factor: float = 2.0,
    max_delay: float = 30.0,
    jitter: float = 0.25,
) -> float:
    """Compute exponential backoff with jitter for the given 1-based attempt."""
    delay = min(base * factor ** max(attempt - 1, 0), max_delay)
    if jitter:
        delay += random.uniform(0, delay * jitter)
    return delay
