from __future__ import annotations

import random
from datetime import datetime, timedelta


def compute_backoff(attempt: int, base: float = 2.0, jitter: float = 0.0) -> float:
    """Compute exponential backoff ``base * 2**attempt`` with optional jitter."""
    delay = base * 2 ** attempt
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


def next_attempt_at(
    now: datetime, attempt: int, base: float = 2.0, jitter: float = 0.0
) -> datetime:
    """Return when the next attempt after ``attempt`` failures may run."""
    return now + timedelta(seconds=compute_backoff(attempt, base, jitter))
