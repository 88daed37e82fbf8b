"""Retry policy for provider calls.

The policy is plain data plus a retryability predicate.  The turn engine
owns the loop, so the policy never sees business logic.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

import httpx

from coda.config import Settings
from coda.engine.errors import ProviderError


def retryable_status(status_code: int | None) -> bool:
    """429 and any 5xx (529 is Anthropic "overloaded"). Other 4xx are permanent."""
    if status_code is None:
        return False
    return status_code == 429 or 500 <= status_code < 600


def is_retryable(error: BaseException) -> bool:
    """Default predicate: transient provider failures only."""
    if isinstance(error, ProviderError):
        if error.retryable:
            return True
        return retryable_status(error.status_code)
    return isinstance(error, (httpx.TimeoutException, httpx.TransportError))


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: initial_delay * multiplier**n, capped at max_delay."""

    max_attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 15.0
    multiplier: float = 2.0
    retryable: Callable[[BaseException], bool] = field(default=is_retryable)

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
        )

    def delay_for(self, attempt: int, error: BaseException | None = None) -> float:
        """Seconds to wait after the given failed attempt (0-indexed).

        A server-supplied retry-after wins over the schedule but is still
        clamped to max_delay.
        """
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None and retry_after >= 0:
            return min(float(retry_after), self.max_delay)
        return min(self.initial_delay * (self.multiplier ** attempt), self.max_delay)

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """True if another attempt is allowed after failing attempt `attempt`."""
        return attempt + 1 < self.max_attempts and self.retryable(error)
