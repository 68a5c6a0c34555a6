"""
Backoff calculation for resilient outbound calls.
"""

import random
from typing import Optional


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0,
                 exponential_base: float = 2.0,
                 jitter: float = 1.0,
                 backoff_strategy: str = "exponential",
                 max_total_wait: Optional[float] = None):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        # Upper bound, in seconds, of the random amount added to each delay.
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy
        self.max_total_wait = max_total_wait


def calculate_delay(attempt: int,
                    config: RetryConfig,
                    multiplier: float = 1.0,
                    exponential_base: Optional[float] = None,
                    strategy: Optional[str] = None) -> float:
    """Calculate the delay before the attempt following ``attempt``.

    ``attempt`` is 1-based. ``multiplier`` scales the base delay and
    ``exponential_base``/``strategy`` override the configured curve for a
    single call, so callers can keep one config and vary the shape per
    failure class. The result never exceeds ``config.max_delay``.
    """
    base = config.base_delay * multiplier
    strategy = strategy or config.backoff_strategy

    if strategy == "exponential":
        growth = exponential_base if exponential_base is not None else config.exponential_base
        delay = base * (growth ** (attempt - 1))
    elif strategy == "linear":
        delay = base * attempt
    else:
        delay = base

    if config.jitter > 0:
        delay += random.uniform(0, config.jitter)

    return max(0.0, min(delay, config.max_delay))
