"""Token bucket data models and the clock-driven refill rule.

Tokens are never generated by a timer. Each access computes how many whole
time units elapsed since the last refill and credits them at once, so the
cost per request is O(1) regardless of how many buckets exist.
"""

import math
import time
from dataclasses import dataclass
from typing import Callable

from bucketguard.exceptions import ConfigurationError

Clock = Callable[[], float]


def now_ms(clock: Clock = time.time) -> int:
    """Current time from ``clock`` (UNIX seconds) in integer milliseconds."""
    return int(clock() * 1000)


@dataclass(frozen=True)
class BucketParameters:
    """Immutable parameters of a limiter instance.

    Attributes:
        refill_rate_per_second: Tokens credited per second (> 0)
        capacity: Maximum burst and initial fill level (> 0)
        key_prefix: Namespace prepended to every token and block key
        time_unit_ms: Refill granularity; the refill timestamp only ever
            advances by whole units
    """

    refill_rate_per_second: float
    capacity: float
    key_prefix: str = ""
    time_unit_ms: int = 1000

    def __post_init__(self) -> None:
        for name in ("refill_rate_per_second", "capacity"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
                raise ConfigurationError(name, "must be a positive number")
        if self.time_unit_ms < 1:
            raise ConfigurationError("time_unit_ms", "must be at least 1")

    @property
    def tokens_per_unit(self) -> float:
        """Tokens credited for each elapsed time unit."""
        return self.refill_rate_per_second * self.time_unit_ms / 1000

    @property
    def fill_time_ms(self) -> int:
        """Time for an empty bucket to refill to capacity, in whole units."""
        return math.ceil(self.capacity / self.tokens_per_unit) * self.time_unit_ms


@dataclass
class Bucket:
    """Per-key token bucket state.

    ``last_access_ms`` is only used for idle eviction; refill is driven by
    ``last_refill_ms`` alone.
    """

    tokens: float
    last_refill_ms: int
    last_access_ms: int


@dataclass(frozen=True)
class ConsumeResult:
    """Outcome of a consume call.

    Attributes:
        allowed: Whether the request may proceed
        remaining: Balance reported to the caller (0 when denied)
        source: Which layer decided (memory, redis, insurance, fail_open,
            abuse_guard)
    """

    allowed: bool
    remaining: float
    source: str = "memory"

    @classmethod
    def denied(cls, source: str) -> "ConsumeResult":
        return cls(allowed=False, remaining=0, source=source)


def refill_and_consume(
    bucket: Bucket,
    requested: float,
    current_ms: int,
    params: BucketParameters,
) -> tuple[float, int]:
    """Apply the refill rule once and subtract ``requested``.

    Does not mutate ``bucket``; the caller decides whether to persist.

    Args:
        bucket: Current bucket state
        requested: Tokens to subtract (may be 0)
        current_ms: Current time in milliseconds
        params: Bucket parameters

    Returns:
        Tuple of (balance after refill and subtraction, clamped to capacity;
        refill timestamp to persist).
    """
    # Out-of-order calls or clock skew must never produce negative refill
    elapsed = max(0, current_ms - bucket.last_refill_ms)
    last_refill_ms = bucket.last_refill_ms

    if elapsed < params.time_unit_ms:
        balance = bucket.tokens - requested
    else:
        units = elapsed // params.time_unit_ms
        balance = bucket.tokens + units * params.tokens_per_unit - requested
        last_refill_ms += units * params.time_unit_ms

    return min(balance, params.capacity), last_refill_ms
