"""
Backoff helpers for rate-limited HubSpot calls.
"""
import random
from typing import Tuple

# 429 is HubSpot's burst limit; 5xx are transient gateway errors
RETRYABLE_STATUS_CODES: Tuple[int, ...] = (429, 500, 502, 503, 504)


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Calculate delay for exponential backoff.

    Args:
        attempt: Current attempt number (1-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap
        exponential_base: Base for exponential calculation
        jitter: Add up to 25% randomness to the delay

    Returns:
        Delay in seconds
    """
    delay = base_delay * (exponential_base ** (attempt - 1))
    delay = min(delay, max_delay)

    if jitter:
        delay += delay * random.uniform(0, 0.25)

    return delay


def is_retryable_status(status: int) -> bool:
    """True if an HTTP status is worth another attempt within the same page fetch"""
    return status in RETRYABLE_STATUS_CODES
