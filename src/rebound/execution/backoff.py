"""Exponential backoff with symmetric jitter.

    delay  = min(base_delay_ms * backoff_multiplier ** attempts_made, max_delay_ms)
    delay += delay * jitter_factor * u,   u ~ Uniform(-0.5, 0.5)
    delay  = round(clamp(delay, 0, max_delay_ms))

The jitter spread is +/- jitter_factor / 2 around the capped delay (+/- 5% for
the default factor of 0.1). The random source is injected so tests can be
deterministic.
"""

from __future__ import annotations

import math
import random
from typing import Protocol

from rebound.core.policy import RetryPolicy


class UniformSource(Protocol):
    """Anything with ``random.Random.uniform`` semantics."""

    def uniform(self, a: float, b: float) -> float: ...


def backoff_delay(attempts_made: int, policy: RetryPolicy) -> float:
    """Capped exponential delay before jitter, in milliseconds."""
    attempts = max(attempts_made, 0)
    try:
        raw = policy.base_delay_ms * math.pow(policy.backoff_multiplier, attempts)
    except OverflowError:
        if policy.base_delay_ms == 0:
            return 0.0
        return float(policy.max_delay_ms)
    return min(raw, float(policy.max_delay_ms))


def compute_delay(
    attempts_made: int,
    policy: RetryPolicy,
    rng: UniformSource | None = None,
) -> int:
    """Compute the next retry delay in milliseconds.

    Args:
        attempts_made: Attempts made before this failure (0-based).
        policy: Resolved retry policy.
        rng: Random source; the module-level ``random`` functions if omitted.

    Returns:
        Delay in whole milliseconds, within ``[0, policy.max_delay_ms]``.
    """
    source: UniformSource = rng if rng is not None else random  # type: ignore[assignment]
    delay = backoff_delay(attempts_made, policy)
    if policy.jitter_factor > 0 and delay > 0:
        delay += delay * policy.jitter_factor * source.uniform(-0.5, 0.5)
    delay = min(max(delay, 0.0), float(policy.max_delay_ms))
    return round(delay)


class DelayCalculator:
    """Delay computation bound to one injected random source.

    Example:
        calculator = DelayCalculator(random.Random(42))
        delay_ms = calculator.compute(attempts_made=2, policy=policy)
    """

    def __init__(self, rng: UniformSource | None = None) -> None:
        self._rng: UniformSource = rng if rng is not None else random.Random()

    def compute(self, attempts_made: int, policy: RetryPolicy) -> int:
        return compute_delay(attempts_made, policy, self._rng)

    @staticmethod
    def bounds(attempts_made: int, policy: RetryPolicy) -> tuple[int, int]:
        """Smallest and largest delay :meth:`compute` can return."""
        delay = backoff_delay(attempts_made, policy)
        spread = delay * policy.jitter_factor * 0.5
        low = max(delay - spread, 0.0)
        high = min(delay + spread, float(policy.max_delay_ms))
        return round(low), round(high)


__all__ = ["DelayCalculator", "UniformSource", "backoff_delay", "compute_delay"]
