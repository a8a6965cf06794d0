from __future__ import annotations

import random
from typing import Callable


def compute_backoff(
    attempt: int,
    *,
    base_seconds: float,
    max_seconds: float,
    jitter: Callable[[float, float], float] = random.uniform,
) -> float:
    """Seconds to wait before retry number ``attempt`` (1-based).

    ``min(max, base * 2**(attempt - 1))`` plus up to ``base`` seconds of
    jitter so retries after an outage do not arrive together.
    """
    exponent = max(attempt, 1) - 1
    delay = min(max_seconds, base_seconds * (2 ** exponent))
    return delay + jitter(0, base_seconds)
