"""
Backoff policy for provider calls.

Delay = min(base_delay * multiplier ** attempt, max_delay) with +/- jitter.
"""

import random
from dataclasses import dataclass
from typing import Optional

from skillsync.core.config import settings


@dataclass
class ExponentialBackoff:
    """Capped exponential backoff with optional jitter.

    Attributes:
        max_retries: Maximum number of retry attempts after the first call
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier
        jitter: Add randomness to prevent thundering herd
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
    """

    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    @classmethod
    def from_settings(cls) -> "ExponentialBackoff":
        return cls(
            max_retries=settings.ADAPTER_MAX_RETRIES,
            base_delay=settings.RATE_LIMIT_BACKOFF_BASE_SECONDS,
            max_delay=settings.RATE_LIMIT_BACKOFF_MAX_SECONDS,
        )

    def next_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Seconds to wait before retry number ``attempt`` (zero-based).

        A provider-supplied ``retry_after`` wins over the computed delay.
        """
        if retry_after is not None:
            return max(0.0, retry_after)

        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
        return max(0.0, min(delay, self.max_delay))

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries
