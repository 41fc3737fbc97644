"""
Settlement polling backoff policy.

One parameterized policy is shared by every payout flow: a fast tier at a
fixed interval for the first ``fast_attempts`` polls, then an interval that
grows by ``factor`` per poll up to ``max_delay``. Polling ends after
``max_attempts`` polls or ``deadline`` seconds, whichever comes first.

Usage:
    policy = BackoffPolicy.from_settings(load_settings().polling)
    delay = policy.delay_for(attempt)
"""
from __future__ import annotations

import random
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import PollingSettings


@dataclass(frozen=True)
class BackoffPolicy:
    """Configuration for the settlement polling schedule.

    Attributes:
        base_delay: Interval for the fast tier, in seconds
        fast_attempts: Number of polls made at ``base_delay``
        factor: Multiplicative growth applied per poll after the fast tier
        max_delay: Cap on the interval between polls
        max_attempts: Hard bound on the number of polls
        deadline: Wall-clock bound on the whole polling session, in seconds
        error_delay: Interval after a failed poll request
        jitter: Maximum jitter factor (0.0-1.0) applied to delays
    """

    base_delay: float = 3.0
    fast_attempts: int = 10
    factor: float = 1.4
    max_delay: float = 30.0
    max_attempts: int = 60
    deadline: float = 600.0
    error_delay: float = 5.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.base_delay < 0 or self.max_delay < 0 or self.error_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.deadline <= 0:
            raise ValueError("deadline must be positive")

    @classmethod
    def from_settings(cls, settings: "PollingSettings") -> "BackoffPolicy":
        return cls(
            base_delay=settings.base_delay_seconds,
            fast_attempts=settings.fast_attempts,
            factor=settings.factor,
            max_delay=settings.max_delay_seconds,
            max_attempts=settings.max_attempts,
            deadline=settings.deadline_seconds,
            error_delay=settings.error_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before the next poll, given ``attempt`` polls already made.

        Args:
            attempt: Number of completed polls (1-based)

        Returns:
            Delay in seconds
        """
        if attempt <= self.fast_attempts:
            delay = self.base_delay
        else:
            delay = self.base_delay * (self.factor ** (attempt - self.fast_attempts))
        delay = min(delay, self.max_delay)
        return self._with_jitter(delay)

    def delay_after_error(self, attempt: int) -> float:
        return self._with_jitter(min(max(self.error_delay, self.delay_for(attempt)), self.max_delay))

    def exhausted(self, attempts: int, elapsed: float) -> bool:
        return attempts >= self.max_attempts or elapsed >= self.deadline

    def _with_jitter(self, delay: float) -> float:
        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)
        return max(0.0, delay)
