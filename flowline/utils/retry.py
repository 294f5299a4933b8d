from __future__ import annotations

import random
from typing import Optional

from ..contracts import RetryPolicy


def compute_backoff(policy: RetryPolicy, attempt: int, rng: random.Random | None = None) -> float:
    """Delay before retrying after failed ``attempt`` (1-based).

    Jitter adds a uniform amount in ``[0, base)`` on top of the base delay.
    """
    if policy.backoff_strategy == "exponential":
        delay = policy.delay_seconds * (2 ** (attempt - 1))
    else:
        delay = policy.delay_seconds
    if policy.jitter:
        delay += (rng or random).random() * delay
    return delay


def next_attempt(
    policy: RetryPolicy, attempt: int, rng: random.Random | None = None
) -> Optional[float]:
    """Return the retry delay after failed ``attempt``, or ``None`` to give up."""
    if attempt >= policy.max_attempts:
        return None
    return compute_backoff(policy, attempt, rng)
