"""Backoff policy: retry delays and retryability classification.

Pure functions apart from the jitter source. Delays grow exponentially from
``base`` up to ``ceiling`` and get up to one second of uniform jitter so that
concurrent callers do not retry in lockstep.
"""

import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Optional

DEFAULT_BASE_DELAY_S = 1.0
DEFAULT_MAX_DELAY_S = 10.0
DEFAULT_MAX_JITTER_S = 1.0
DEFAULT_MAX_RETRIES = 3

RETRYABLE_ERROR_CLASSES = frozenset({
    "ServiceUnavailable",
    "InternalError",
    "TemporaryFailure",
    "NetworkError",
    "TimeoutError",
})


def backoff_floor(attempt: int, base: float = DEFAULT_BASE_DELAY_S, ceiling: float = DEFAULT_MAX_DELAY_S) -> float:
    """Delay before jitter: ``min(base * 2**attempt, ceiling)``."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    # Cap the exponent; 2**attempt overflows float for very large attempts
    exponent = min(attempt, 64)
    return min(base * (2 ** exponent), ceiling)


def next_delay(
    attempt: int,
    base: float = DEFAULT_BASE_DELAY_S,
    ceiling: float = DEFAULT_MAX_DELAY_S,
    max_jitter: float = DEFAULT_MAX_JITTER_S,
    jitter_source: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait before retry number ``attempt + 1``.

    Args:
        attempt: Zero-based index of the attempt that just failed.
        base: Delay for the first retry, before jitter.
        ceiling: Upper bound of the pre-jitter delay.
        max_jitter: Jitter is uniform in ``[0, max_jitter)``.
        jitter_source: Returns a float in ``[0, 1)``.
    """
    return backoff_floor(attempt, base, ceiling) + jitter_source() * max_jitter


def is_retryable(http_status: Optional[int], error_class: Optional[str] = None) -> bool:
    """True for 5xx, 429 and the transient upstream error classes."""
    if http_status is not None:
        if http_status >= 500 or http_status == 429:
            return True
    return error_class in RETRYABLE_ERROR_CLASSES if error_class else False


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Parses a ``Retry-After`` header (delta-seconds or HTTP-date) into seconds."""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when is None:
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        current = now or datetime.now(timezone.utc)
        seconds = (when - current).total_seconds()
    return max(0.0, seconds)


@dataclass(frozen=True)
class BackoffPolicy:
    """Value Object bundling the retry configuration."""
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay_s: float = DEFAULT_BASE_DELAY_S
    max_delay_s: float = DEFAULT_MAX_DELAY_S
    max_jitter_s: float = DEFAULT_MAX_JITTER_S

    def delay_for(self, attempt: int, jitter_source: Callable[[], float] = random.random) -> float:
        return next_delay(attempt, self.base_delay_s, self.max_delay_s, self.max_jitter_s, jitter_source)
