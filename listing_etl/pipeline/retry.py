"""Per-listing retry policy with exponential backoff."""
from __future__ import annotations

import random
from dataclasses import dataclass, field


@dataclass(frozen=True)
class RetryDecision:
    """What to do with a listing after a failed enrichment attempt."""

    retry: bool
    attempts: int
    delay: float = 0.0


@dataclass
class RetryPolicy:
    """Bounded retries: attempt ``n`` (1-based) waits ``base_delay * 2**(n-1)``.

    The wait is stretched by a random factor in ``[1, jitter]`` so workers
    that failed together do not retry together. Once ``attempts`` reaches
    ``max_retries`` the listing is failed permanently.
    """

    max_retries: int = 3
    base_delay: float = 5.0
    jitter: float = 1.5
    max_delay: float = 600.0
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.jitter < 1.0:
            raise ValueError("jitter multiplier must be >= 1.0")

    def backoff_delay(self, attempts: int) -> float:
        """Un-jittered delay after ``attempts`` failures."""
        if attempts < 1:
            return 0.0
        return min(self.base_delay * 2 ** (attempts - 1), self.max_delay)

    def jittered_delay(self, attempts: int) -> float:
        delay = self.backoff_delay(attempts)
        return self.rng.uniform(delay, delay * self.jitter)

    def decide(self, attempts: int) -> RetryDecision:
        """Decide after the ``attempts``-th consecutive failure."""
        if attempts >= self.max_retries:
            return RetryDecision(retry=False, attempts=attempts)
        return RetryDecision(retry=True, attempts=attempts, delay=self.jittered_delay(attempts))
