"""Backoff between failed fetches.

delay = initial * (factor ^ failures), capped at `maximum`, then spread by
up to +/- `jitter` (a fraction of the delay) so that a fleet of workers
doesn't retry in lockstep after a coordinator outage.
"""

import random

from pullman.constants import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_BACKOFF_INITIAL_SECONDS,
    DEFAULT_BACKOFF_JITTER,
    DEFAULT_BACKOFF_MAX_SECONDS,
)


class ExponentialBackoff:
    """Bounded, jittered exponential backoff. Not thread-safe; owned by the fetch loop."""

    def __init__(
        self,
        initial: float = DEFAULT_BACKOFF_INITIAL_SECONDS,
        maximum: float = DEFAULT_BACKOFF_MAX_SECONDS,
        factor: float = DEFAULT_BACKOFF_FACTOR,
        jitter: float = DEFAULT_BACKOFF_JITTER,
        rng: random.Random | None = None,
    ) -> None:
        if not 0 <= jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")

        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self.jitter = jitter
        self.failures = 0
        self._rng = rng or random.Random()

    def next_delay(self) -> float:
        """Record a failure, and return the seconds to wait before the next attempt."""

        # factor ** failures overflows a float after ~1000 failures
        base = min(self.maximum, self.initial * (self.factor ** min(self.failures, 64)))
        self.failures += 1

        if self.jitter:
            spread = base * self.jitter
            base += self._rng.uniform(-spread, spread)

        return max(0.0, min(self.maximum, base))

    def reset(self) -> None:
        """Forget previous failures, after a successful attempt."""

        self.failures = 0
