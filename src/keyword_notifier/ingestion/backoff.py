"""Exponential backoff with jitter for the ingestion loops."""

from __future__ import annotations

import random


class ExponentialBackoff:
    """Exponential backoff with non-negative jitter.

    Computes delays as ``min(base * multiplier**attempt, max_delay)`` plus up
    to ``jitter`` of that delay, never exceeding ``max_delay``. Jitter only
    ever lengthens a delay, so successive delays grow strictly until the cap
    is reached. Call ``reset()`` after a successful cycle.
    """

    def __init__(
        self,
        base_delay: float = 5.0,
        max_delay: float = 900.0,
        multiplier: float = 2.0,
        jitter: float = 0.1,
    ) -> None:
        if base_delay <= 0 or max_delay < base_delay:
            raise ValueError("backoff requires 0 < base_delay <= max_delay")
        if multiplier <= 1:
            raise ValueError("backoff multiplier must be > 1")
        if not 0 <= jitter < multiplier - 1:
            raise ValueError("backoff jitter must be in [0, multiplier - 1)")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter = jitter
        self._attempt = 0

    @property
    def attempt(self) -> int:
        """Number of delays handed out since the last reset."""
        return self._attempt

    def next_delay(self) -> float:
        """Return the next delay in seconds and advance the attempt counter."""
        delay = min(self.base_delay * (self.multiplier ** self._attempt), self.max_delay)
        delay = min(delay + delay * self.jitter * random.random(), self.max_delay)
        self._attempt += 1
        return delay

    def reset(self) -> None:
        self._attempt = 0
