"""Redis-backed token bucket store.

Bucket state lives in Redis and is only ever mutated through the atomic Lua
script in ``redis_lua``. Keys carry an expiry refreshed on every write, so
Redis memory is bounded to recently active keys.

Redis key format (one Redis Cluster hash slot per bucket):
- {<prefix><key>}:tokens - Current balance
- {<prefix><key>}:ts     - Last refill timestamp (ms)
- {<prefix><key>}:lock   - Lockout marker after a denial
"""

import asyncio
import math
import time
from typing import Any, Optional

from bucketguard.core.logging import get_log_context, get_logger
from bucketguard.exceptions import ConfigurationError, SharedStoreUnavailableError
from bucketguard.limiter.models import BucketParameters, Clock, ConsumeResult, now_ms
from bucketguard.limiter.redis_lua import TOKEN_BUCKET_SCRIPT, TOKEN_BUCKET_SCRIPT_VERSION

logger = get_logger(__name__)


class RedisBucketStore:
    """Shared token bucket store executed as a single Redis Lua script.

    Provides:
    - Atomic refill/consume across any number of concurrent callers
    - Optional per-key lockout after a denial (first writer wins)
    - A cached readiness probe; not-ready is reported as
      SharedStoreUnavailableError, exactly like a script failure
    """

    DEFAULT_KEY_EXPIRY_MS = 60000
    DEFAULT_READINESS_CHECK_INTERVAL = 1.0

    def __init__(
        self,
        params: BucketParameters,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        lock_duration_seconds: float = 0,
        key_expiry_ms: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        readiness_check_interval: Optional[float] = None,
        clock: Clock = time.time,
    ) -> None:
        """Initialize the Redis bucket store.

        Args:
            params: Bucket parameters (rate, capacity, time unit)
            redis_client: A redis.asyncio client; takes priority over redis_url
            redis_url: Connection URL used to create a client lazily
            lock_duration_seconds: Lockout after a denial (0 disables)
            key_expiry_ms: Expiry attached to every bucket key write; raised
                to the time a bucket needs to refill from empty
            timeout_seconds: Optional per-call timeout around the script
            readiness_check_interval: Seconds a PING result is trusted
            clock: Time source returning UNIX seconds

        Raises:
            ConfigurationError: If neither a client nor a URL is given.
        """
        if redis_client is None and not redis_url:
            raise ConfigurationError("redis_client", "a Redis client or redis_url is required")
        if lock_duration_seconds < 0:
            raise ConfigurationError("lock_duration_seconds", "must be >= 0")

        self.params = params
        self._redis = redis_client
        self._redis_url = redis_url
        self._owns_client = redis_client is None
        # EX only accepts whole seconds
        self._lock_seconds = int(math.ceil(lock_duration_seconds))
        # Never expire a bucket before it could have refilled to capacity
        self._key_expiry_ms = max(key_expiry_ms or self.DEFAULT_KEY_EXPIRY_MS, params.fill_time_ms)
        self._timeout = timeout_seconds
        self._readiness_interval = (
            readiness_check_interval
            if readiness_check_interval is not None
            else self.DEFAULT_READINESS_CHECK_INTERVAL
        )
        self._clock = clock
        self._ready: Optional[bool] = None
        self._ready_checked_at = 0.0
        logger.debug(f"Redis bucket store using token bucket script v{TOKEN_BUCKET_SCRIPT_VERSION}")

    def _get_redis(self) -> Any:
        """Get or create Redis client."""
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    @staticmethod
    def make_keys(key: str) -> tuple[str, str, str]:
        """Create the balance, timestamp and lockout keys for a bucket."""
        tag = "{" + key + "}"
        return f"{tag}:tokens", f"{tag}:ts", f"{tag}:lock"

    async def is_ready(self) -> bool:
        """Check whether Redis answers PING, caching the answer briefly."""
        checked = time.monotonic()
        if self._ready is not None and checked - self._ready_checked_at < self._readiness_interval:
            return self._ready
        try:
            ready = bool(await self._call(self._get_redis().ping()))
        except Exception as e:
            logger.error(f"Redis readiness check failed: {e}")
            ready = False
        self._ready = ready
        self._ready_checked_at = checked
        return ready

    def mark_unready(self) -> None:
        """Forget the cached readiness so the next call probes again."""
        self._ready = None

    async def consume(self, key: str, requested: float = 1) -> ConsumeResult:
        """Run the token bucket script for ``key``.

        Raises:
            ValueError: If requested is negative.
            SharedStoreUnavailableError: If Redis is not ready.
            Exception: Any error raised by the script call, unchanged.
        """
        if requested < 0:
            raise ValueError("requested tokens must be >= 0")
        if not await self.is_ready():
            raise SharedStoreUnavailableError("not_ready")

        tokens_key, ts_key, lock_key = self.make_keys(key)
        try:
            result = await self._call(
                self._get_redis().eval(
                    TOKEN_BUCKET_SCRIPT,
                    3,  # Number of keys
                    tokens_key,  # KEYS[1]
                    ts_key,  # KEYS[2]
                    lock_key,  # KEYS[3]
                    self.params.capacity,  # ARGV[1]
                    requested,  # ARGV[2]
                    self.params.tokens_per_unit,  # ARGV[3]
                    self.params.time_unit_ms,  # ARGV[4]
                    self._lock_seconds,  # ARGV[5]
                    self._key_expiry_ms,  # ARGV[6]
                    now_ms(self._clock),  # ARGV[7]
                )
            )
        except Exception:
            self.mark_unready()
            raise

        denied = int(result[0]) == 1
        balance = float(result[1])
        if denied:
            logger.debug(
                "Request denied",
                extra=get_log_context(token_key=key, backend="redis", balance=0),
            )
            return ConsumeResult.denied("redis")
        return ConsumeResult(allowed=True, remaining=balance, source="redis")

    async def _call(self, awaitable: Any) -> Any:
        if self._timeout:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        return await awaitable

    async def close(self) -> None:
        """Close the Redis connection if this store created it."""
        if self._redis is not None and self._owns_client:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None
