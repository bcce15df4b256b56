"""
Retry policy — bounded exponential backoff with jitter.

The scheduler never retries on its own. A caller hands it a RetryPolicy,
and the policy wraps the apply of idempotent steps only: re-running a
non-idempotent apply could do the work twice.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from provisioner.core.errors import StepApplyError, StepCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """How often, and how patiently, to retry a failing apply.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound for a single delay.
        jitter: Fraction of the delay added at random (0.3 → up to +30%).
        retry_on: Exception types worth another attempt.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.3
    retry_on: tuple[type[BaseException], ...] = (StepApplyError, OSError)
    sleep: Callable[[float], None] = time.sleep
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failure (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + self.rng.uniform(0, delay * self.jitter)

    def should_retry(self, exc: BaseException) -> bool:
        if isinstance(exc, StepCancelledError):
            return False
        return isinstance(exc, self.retry_on)

    def call(self, fn: Callable[[], T], label: str = "") -> T:
        """Run ``fn`` until it succeeds or attempts run out.

        The last exception is re-raised unchanged.
        """
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as e:
                if attempt >= self.max_attempts or not self.should_retry(e):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s — retrying in %.1fs",
                    label or "operation", attempt, self.max_attempts, e, delay,
                )
                self.sleep(delay)
                attempt += 1
