from __future__ import annotations

import random


def compute_backoff(
    attempt: int,
    base: float = 2.0,
    cap: float = 300.0,
    jitter: float = 0.0,
    multiplier: float = 1.0,
) -> float:
    """Exponential backoff ``base * 2^(attempt-1)``, capped, with relative jitter."""
    delay = min(base * multiplier * 2 ** max(0, attempt - 1), cap)
    return delay + random.uniform(0, jitter * delay) if jitter else delay
