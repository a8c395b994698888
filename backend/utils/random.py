from __future__ import annotations

import math
from typing import Optional

import numpy as np


def bounded_normal(
    mean: float = 0.0,
    sd: float = 1.0,
    low: float = -math.inf,
    high: float = math.inf,
    rng: Optional[np.random.Generator] = None,
    max_attempts: int = 100,
) -> float:
    """Draw from Normal(mean, sd) restricted to [low, high].

    Rejection-samples up to ``max_attempts`` draws. If none lands in bounds the
    mean clamped into [low, high] is returned, so the result is always in bounds.
    """
    if low > high:
        raise ValueError(f"low ({low}) must not exceed high ({high})")
    rng = rng or np.random.default_rng()
    draws = rng.normal(mean, sd, size=max_attempts)
    inside = draws[(draws >= low) & (draws <= high)]
    if inside.size:
        return float(inside[0])
    return float(min(max(mean, low), high))


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves rounded up (2.5 -> 3, -2.5 -> -2)."""
    return int(math.floor(value + 0.5))
