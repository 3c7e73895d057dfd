"""
Exchange error hierarchy and the retry policy applied to every exchange call.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

import httpx


class ExchangeError(Exception):
    """Non-success response (or transport failure) from the exchange."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthError(ExchangeError):
    """Bad credentials, malformed signing key, or a 401/403. Fatal for the run."""


class RateLimitError(ExchangeError):
    """Rate limited and out of retries. `retry_after` is the server-advised wait."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


def parse_retry_after(headers: httpx.Headers) -> float | None:
    """Retry-After in seconds, or None if absent/unparseable."""
    raw = headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry for rate limits and transport errors.

    A server-advised Retry-After wins when present; otherwise exponential
    backoff from `backoff_sec`, capped at `max_backoff_sec`, with jitter.
    """
    max_attempts: int = 4
    backoff_sec: float = 5.0
    max_backoff_sec: float = 60.0
    jitter_frac: float = 0.15

    def delay(self, attempt: int, retry_after: float | None = None) -> float:
        if retry_after is not None:
            return retry_after
        wait = min(self.max_backoff_sec, self.backoff_sec * (2 ** attempt))
        if self.jitter_frac > 0:
            wait *= 1.0 + random.uniform(-self.jitter_frac, self.jitter_frac)
        return max(0.0, wait)

    def should_retry(self, attempt: int) -> bool:
        """True if another attempt is allowed after `attempt` (0-based) failed."""
        return attempt + 1 < self.max_attempts
