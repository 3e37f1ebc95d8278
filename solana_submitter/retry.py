"""
Wait schedules between submission attempts and between batch rounds.

The engine owns its own attempt loop (fee escalation and transaction
rebuilding have to happen between attempts), so this module only answers
"how long to wait after attempt n".
"""

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RetryConfig:
    """
    Shape of a wait schedule.

    Attributes:
        base_delay: Wait after the first failed attempt, in seconds
        max_delay: Upper bound for any computed wait
        growth: Multiplier applied per further attempt (exponential only)
        jitter: Random spread as a fraction of the wait, 0 disables it
    """
    base_delay: float = 1.0
    max_delay: float = 20.0
    growth: float = 2.0
    jitter: float = 0.0

    def __post_init__(self):
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.growth < 1:
            raise ValueError("growth must be >= 1")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")

    def bounded(self, delay: float) -> float:
        if self.jitter:
            spread = delay * self.jitter
            delay += random.uniform(-spread, spread)
        return max(0.0, min(delay, self.max_delay))


class BackoffStrategy(ABC):

    @abstractmethod
    def get_delay(self, attempt: int, config: RetryConfig) -> float:
        """Wait after the given (1-based) attempt."""


class ExponentialBackoff(BackoffStrategy):
    """base_delay * growth ^ (attempt - 1), capped at max_delay."""

    def get_delay(self, attempt: int, config: RetryConfig) -> float:
        return config.bounded(config.base_delay * config.growth ** max(attempt - 1, 0))


class ConstantBackoff(BackoffStrategy):
    """Always base_delay. Used for rate limits, which say nothing about fees."""

    def get_delay(self, attempt: int, config: RetryConfig) -> float:
        return config.bounded(config.base_delay)


def calculate_delay(
    attempt: int,
    config: RetryConfig,
    strategy: Optional[BackoffStrategy] = None,
    retry_after: Optional[float] = None,
) -> float:
    """
    Wait after ``attempt``.

    A ``retry_after`` hint from the server (e.g. a 429 Retry-After header)
    replaces the computed schedule, still bounded by ``max_delay``.
    """
    if retry_after is not None:
        return max(0.0, min(float(retry_after), config.max_delay))
    return (strategy or ExponentialBackoff()).get_delay(attempt, config)


__all__ = [
    "RetryConfig",
    "BackoffStrategy",
    "ExponentialBackoff",
    "ConstantBackoff",
    "calculate_delay",
]
