"""In-process token bucket store.

Authoritative for the local limiter and used as the insurance fallback when
the shared Redis store is unreachable.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: every read-modify-write runs under one store-wide lock.
"""

import threading
import time
from typing import Dict, Optional

from bucketguard.core.logging import get_log_context, get_logger
from bucketguard.limiter.models import (
    Bucket,
    BucketParameters,
    Clock,
    ConsumeResult,
    now_ms,
    refill_and_consume,
)

logger = get_logger(__name__)


class LocalBucketStore:
    """Map of key -> bucket state with on-demand refill.

    A bucket is created full on first access and evicted by ``sweep()`` once
    it has been idle for ``idle_ttl_seconds``. A successful non-zero request
    always leaves a positive balance, so callers may test ``remaining > 0``.
    """

    DEFAULT_IDLE_TTL_SECONDS = 60
    DEFAULT_SWEEP_THRESHOLD = 10000

    def __init__(
        self,
        params: BucketParameters,
        lock_duration_seconds: float = 0,
        idle_ttl_seconds: Optional[float] = None,
        sweep_threshold: Optional[int] = None,
        clock: Clock = time.time,
        source: str = "memory",
    ):
        """Initialize the store.

        Args:
            params: Bucket parameters (rate, capacity, time unit)
            lock_duration_seconds: Cooldown installed on a key after a denial
                (0 disables)
            idle_ttl_seconds: Idle time after which a bucket may be evicted;
                raised to the time a bucket needs to refill from empty
            sweep_threshold: Bucket count that triggers an opportunistic sweep
            clock: Time source returning UNIX seconds
            source: Label reported in results ("memory" or "insurance")
        """
        if lock_duration_seconds < 0:
            raise ValueError("lock_duration_seconds must be >= 0")
        self.params = params
        self.lock_duration_seconds = lock_duration_seconds
        idle_ttl_ms = int(
            (idle_ttl_seconds if idle_ttl_seconds is not None else self.DEFAULT_IDLE_TTL_SECONDS) * 1000
        )
        # Never evict a bucket before it could have refilled to capacity
        self._idle_ttl_ms = max(idle_ttl_ms, params.fill_time_ms)
        self._sweep_threshold = sweep_threshold or self.DEFAULT_SWEEP_THRESHOLD
        self._next_sweep_at = self._sweep_threshold
        self._clock = clock
        self._source = source

        self._buckets: Dict[str, Bucket] = {}
        # key -> locked-until timestamp (ms)
        self._lockouts: Dict[str, int] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._buckets)

    def __contains__(self, key: str) -> bool:
        return key in self._buckets

    def consume(self, key: str, requested: float = 1) -> ConsumeResult:
        """Consume ``requested`` tokens from the bucket for ``key``.

        A request of 0 tokens reports the current balance without mutating
        any state.

        Raises:
            ValueError: If requested is negative.
        """
        if requested < 0:
            raise ValueError("requested tokens must be >= 0")

        current = now_ms(self._clock)
        capacity = self.params.capacity

        with self._lock:
            if self._is_locked(key, current):
                return ConsumeResult.denied(self._source)

            bucket = self._buckets.get(key)
            if bucket is None:
                if requested == 0:
                    return ConsumeResult(allowed=True, remaining=capacity, source=self._source)
                if len(self._buckets) >= self._next_sweep_at:
                    self._sweep_locked(current)
                bucket = Bucket(tokens=capacity, last_refill_ms=current, last_access_ms=current)
                self._buckets[key] = bucket

            balance, last_refill_ms = refill_and_consume(bucket, requested, current, self.params)

            if requested == 0:
                return ConsumeResult(allowed=True, remaining=max(balance, 0), source=self._source)

            bucket.last_access_ms = current
            if balance <= 0:
                # No debt: stored tokens and refill timestamp stay untouched
                if self.lock_duration_seconds > 0:
                    self._lockouts[key] = current + int(self.lock_duration_seconds * 1000)
                logger.debug(
                    "Request denied",
                    extra=get_log_context(token_key=key, backend=self._source, balance=0),
                )
                return ConsumeResult.denied(self._source)

            bucket.tokens = balance
            bucket.last_refill_ms = last_refill_ms
            return ConsumeResult(allowed=True, remaining=balance, source=self._source)

    def get_balance(self, key: str) -> float:
        """Current balance for ``key`` (0 while locked out)."""
        return self.consume(key, 0).remaining

    def reset(self, key: str) -> None:
        """Forget the bucket and any lockout for ``key``."""
        with self._lock:
            self._buckets.pop(key, None)
            self._lockouts.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._lockouts.clear()

    def sweep(self, current_ms: Optional[int] = None) -> int:
        """Evict idle buckets and expired lockouts.

        Args:
            current_ms: Reference time in ms; defaults to the store's clock.

        Returns:
            Number of entries removed.
        """
        if current_ms is None:
            current_ms = now_ms(self._clock)
        with self._lock:
            return self._sweep_locked(current_ms)

    def _sweep_locked(self, current_ms: int) -> int:
        idle_keys = [
            key
            for key, bucket in self._buckets.items()
            if current_ms - bucket.last_access_ms >= self._idle_ttl_ms
        ]
        for key in idle_keys:
            del self._buckets[key]

        expired_locks = [key for key, until in self._lockouts.items() if until <= current_ms]
        for key in expired_locks:
            del self._lockouts[key]

        # Next opportunistic sweep once the surviving map has doubled
        self._next_sweep_at = max(self._sweep_threshold, 2 * len(self._buckets))

        removed = len(idle_keys) + len(expired_locks)
        if removed:
            logger.debug(f"Swept {len(idle_keys)} idle buckets and {len(expired_locks)} lockouts")
        return removed

    def _is_locked(self, key: str, current_ms: int) -> bool:
        locked_until = self._lockouts.get(key)
        if locked_until is None:
            return False
        if current_ms < locked_until:
            return True
        del self._lockouts[key]
        return False
