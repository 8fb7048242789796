"""
Retry policy and backoff calculation for outbound provider calls.

Error-aware retry logic:
- 4xx client errors -> fail immediately (no retry)
- 429 rate limit -> retry with backoff (respect Retry-After)
- 5xx server errors, timeouts, connection errors -> retry with backoff + jitter
- After max retries -> give up and log

Backoff formula: base_delay * (2^attempt) + random_jitter
"""

import logging
import os
import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

MAX_RETRIES = int(os.getenv("NOTIFY_MAX_RETRIES", "3"))
BASE_DELAY_SECONDS = float(os.getenv("NOTIFY_BASE_DELAY_SECONDS", "2"))
MAX_DELAY_SECONDS = 60.0
JITTER_FACTOR = 0.25  # +/- 25% jitter


class ErrorCategory(str, Enum):
    """Error classification for retry decisions."""
    CLIENT_ERROR = "client_error"  # 4xx - no retry
    RATE_LIMIT = "rate_limit"  # 429 - retry with Retry-After
    SERVER_ERROR = "server_error"  # 5xx - retry with backoff
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self != ErrorCategory.CLIENT_ERROR


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy configuration.

    Attributes:
        max_retries: Maximum retry attempts after the first call
        base_delay_seconds: Initial delay between retries
        max_delay_seconds: Maximum delay cap
        jitter_factor: Random jitter factor (0.25 = +/- 25%)
    """
    max_retries: int = MAX_RETRIES
    base_delay_seconds: float = BASE_DELAY_SECONDS
    max_delay_seconds: float = MAX_DELAY_SECONDS
    jitter_factor: float = JITTER_FACTOR


def categorize_error(
    status_code: Optional[int],
    error: Optional[BaseException] = None,
) -> ErrorCategory:
    """
    Categorize an outbound failure for retry decisions.

    Args:
        status_code: HTTP status code (if a response was received)
        error: Transport exception (for non-HTTP failures)
    """
    if status_code is not None:
        if status_code == 429:
            return ErrorCategory.RATE_LIMIT
        if 500 <= status_code < 600:
            return ErrorCategory.SERVER_ERROR
        if 400 <= status_code < 500:
            return ErrorCategory.CLIENT_ERROR

    if isinstance(error, httpx.TimeoutException):
        return ErrorCategory.TIMEOUT
    if isinstance(error, httpx.TransportError):
        return ErrorCategory.CONNECTION

    return ErrorCategory.UNKNOWN


def calculate_backoff(
    attempt: int,
    policy: RetryPolicy = RetryPolicy(),
    retry_after: Optional[int] = None,
) -> float:
    """
    Calculate backoff delay with exponential growth and jitter.

    Formula: min(base * 2^attempt + jitter, max_delay)

    Args:
        attempt: Current attempt number (0-indexed)
        policy: Retry policy configuration
        retry_after: Server-specified retry delay (overrides calculation)

    Returns:
        Delay in seconds before next retry
    """
    if retry_after is not None and retry_after > 0:
        return min(float(retry_after), policy.max_delay_seconds)

    delay = policy.base_delay_seconds * (2 ** attempt)

    jitter_range = delay * policy.jitter_factor
    delay = delay + random.uniform(-jitter_range, jitter_range)

    delay = min(delay, policy.max_delay_seconds)
    return max(delay, 0.0)


def parse_retry_after(response: Optional[httpx.Response]) -> Optional[int]:
    if response is None:
        return None
    value = response.headers.get("Retry-After")
    if value and value.isdigit():
        return int(value)
    return None
