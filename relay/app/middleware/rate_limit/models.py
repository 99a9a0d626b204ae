"""Rate limiting data models.

This module contains dataclasses for rate limit state and results.
"""

import math
import time
from dataclasses import dataclass


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class RateLimitDecision:
    """Result of a rate limit check.

    ``remaining`` is always 0 when the request is denied.
    """
    allowed: bool
    remaining: int
    reset_at_ms: int
    limit: int = 0

    def __post_init__(self) -> None:
        if not self.allowed:
            self.remaining = 0
        self.remaining = max(0, self.remaining)

    def retry_after_seconds(self, at_ms: int | None = None) -> int:
        """Seconds until the window resets, rounded up and floored at zero."""
        current = now_ms() if at_ms is None else at_ms
        return max(0, math.ceil((self.reset_at_ms - current) / 1000))


@dataclass
class RateLimitEntry:
    """Fixed-window counter state for one key."""
    count: int = 0
    reset_at_ms: int = 0
