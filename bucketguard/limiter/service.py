"""Token bucket limiters: local and Redis-backed, behind one public API.

Decision order for every call:
    abuse guard -> bucket store (Redis, when distributed)
                -> insurance local store (when Redis fails and enabled)
                -> fail open (one available token)

Shared-store failures are logged and absorbed, never raised to callers.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional, Union

import redis

from bucketguard.core.client_ip import get_client_ip
from bucketguard.core.config import Settings, settings
from bucketguard.core.logging import get_log_context, get_logger
from bucketguard.exceptions import ConfigurationError, SharedStoreUnavailableError
from bucketguard.limiter.abuse_guard import AbuseGuard
from bucketguard.limiter.memory import LocalBucketStore
from bucketguard.limiter.models import BucketParameters, Clock, ConsumeResult
from bucketguard.limiter.redis_store import RedisBucketStore

logger = get_logger(__name__)


@dataclass
class DistributedLimiterOptions:
    """Options for the Redis-backed limiter.

    Attributes:
        lock_duration_seconds: Per-key lockout after a denial (0 disables)
        abuse_threshold_per_minute: Attempts per minute per block key before
            the abuse guard locks it out (None disables)
        abuse_lockout_seconds: Abuse guard lockout duration
        insurance_enabled: Fall back to a local limiter when Redis fails
        insurance_refill_rate_per_second: Insurance rate (defaults to the
            shared rate)
        insurance_capacity: Insurance capacity (defaults to the shared
            capacity)
    """

    lock_duration_seconds: float = 0
    abuse_threshold_per_minute: Optional[int] = None
    abuse_lockout_seconds: Optional[float] = None
    insurance_enabled: bool = False
    insurance_refill_rate_per_second: Optional[float] = None
    insurance_capacity: Optional[float] = None

    @classmethod
    def coerce(
        cls, options: Union["DistributedLimiterOptions", Mapping[str, Any], None]
    ) -> "DistributedLimiterOptions":
        """Build options from an instance, a mapping or None."""
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        known = {f.name for f in fields(cls)}
        unknown = set(options) - known
        if unknown:
            raise ConfigurationError("options", f"unknown option(s): {', '.join(sorted(unknown))}")
        return cls(**options)


class _TokenBucketLimiterBase(ABC):
    """Shared key handling, abuse guarding and housekeeping."""

    backend = "memory"

    def __init__(
        self,
        params: BucketParameters,
        abuse_threshold_per_minute: Optional[int] = None,
        abuse_lockout_seconds: Optional[float] = None,
        abuse_sweep_threshold: Optional[int] = None,
        clock: Clock = time.time,
    ):
        self.params = params
        self._clock = clock
        self.abuse_guard = AbuseGuard(
            threshold=abuse_threshold_per_minute,
            lockout_seconds=abuse_lockout_seconds if abuse_lockout_seconds is not None else 60,
            sweep_threshold=abuse_sweep_threshold,
            clock=clock,
        )
        self._cleanup_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

    @property
    def key_prefix(self) -> str:
        return self.params.key_prefix

    def _full_keys(self, token_key: str, block_key: Optional[str]) -> tuple[str, str]:
        full_token_key = self.key_prefix + token_key
        full_block_key = self.key_prefix + block_key if block_key else full_token_key
        return full_token_key, full_block_key

    def _check_abuse(self, full_block_key: str, requested_tokens: float) -> Optional[ConsumeResult]:
        """Deny locked-out block keys; otherwise count the attempt."""
        if self.abuse_guard.is_blocked(full_block_key):
            return ConsumeResult.denied("abuse_guard")
        if requested_tokens > 0:
            self.abuse_guard.record(full_block_key)
        return None

    @staticmethod
    def _validate_requested(requested_tokens: float) -> None:
        if requested_tokens < 0:
            raise ValueError("requested_tokens must be >= 0")

    def _log_decision(self, full_token_key: str, full_block_key: str, result: ConsumeResult) -> None:
        logger.debug(
            f"Request {'allowed' if result.allowed else 'denied'}. Token balance: {result.remaining}",
            extra=get_log_context(
                limiter=self.key_prefix or None,
                token_key=full_token_key,
                block_key=full_block_key,
                backend=result.source,
                balance=result.remaining,
            ),
        )

    @abstractmethod
    async def acquire(
        self, token_key: str, block_key: Optional[str] = None, requested_tokens: float = 1
    ) -> ConsumeResult:
        """Consume tokens and return the full decision.

        Returns:
            ConsumeResult with the allowed flag, balance and deciding layer
        """
        pass

    async def consume(
        self, token_key: str, block_key: Optional[str] = None, requested_tokens: float = 1
    ) -> float:
        """Consume tokens and return the current balance.

        Args:
            token_key: Bucket identity (e.g. route or user id)
            block_key: Abuse tracking identity (e.g. client IP); defaults to
                the token key
            requested_tokens: Tokens to consume; 0 only reports the balance

        Returns:
            The balance after consumption; 0 means denied for non-zero
            requests. Exception: the Redis backend denies only below zero,
            so a Redis-decided request that spends the last token is
            allowed and still returns 0. Use ``acquire()`` when the
            decision itself matters.
        """
        result = await self.acquire(token_key, block_key, requested_tokens)
        return result.remaining

    async def consume_by_client_address(
        self, request: Any, token_key: str = "", block_key: Optional[str] = None
    ) -> float:
        """Consume one token keyed by the client address of ``request``.

        The effective token key is ``address + token_key``; the block key
        defaults to the address so all routes share one abuse identity.
        """
        ip = get_client_ip(request)
        return await self.consume(ip + token_key, block_key or ip or None)

    def _sweep_stores(self) -> int:
        return 0

    async def cleanup(self) -> int:
        """Sweep expired abuse guard entries and idle local buckets.

        Returns:
            Number of entries removed.
        """
        return self.abuse_guard.sweep() + self._sweep_stores()

    async def start_cleanup_task(self, interval: Optional[float] = None) -> None:
        """Start a background task that runs ``cleanup()`` periodically."""
        if self._cleanup_task is not None:
            return
        self._shutdown_event.clear()
        self._cleanup_task = asyncio.create_task(
            self._cleanup_loop(interval or settings.cleanup_interval_seconds)
        )
        logger.info("Started token bucket cleanup task")

    async def stop_cleanup_task(self) -> None:
        """Stop the periodic cleanup task."""
        if self._cleanup_task is None:
            return
        self._shutdown_event.set()
        try:
            await asyncio.wait_for(self._cleanup_task, timeout=5.0)
        except asyncio.TimeoutError:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
        self._cleanup_task = None
        logger.info("Stopped token bucket cleanup task")

    async def _cleanup_loop(self, interval: float) -> None:
        """Background loop for periodic cleanup."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if self._shutdown_event.is_set():
                break
            try:
                removed = await self.cleanup()
                if removed:
                    logger.debug(f"Cleanup removed {removed} expired entries")
            except Exception as e:
                logger.error(f"Error during token bucket cleanup: {e}")

    async def close(self) -> None:
        """Stop background work and release resources."""
        await self.stop_cleanup_task()


class TokenBucketLimiter(_TokenBucketLimiterBase):
    """In-process token bucket limiter.

    Suitable for single-instance deployments. The async API exists so the
    local and distributed limiters are interchangeable; synchronous callers
    can use ``consume_sync``.
    """

    backend = "memory"

    def __init__(
        self,
        params: BucketParameters,
        lock_duration_seconds: float = 0,
        abuse_threshold_per_minute: Optional[int] = None,
        abuse_lockout_seconds: Optional[float] = None,
        idle_ttl_seconds: Optional[float] = None,
        sweep_threshold: Optional[int] = None,
        abuse_sweep_threshold: Optional[int] = None,
        clock: Clock = time.time,
    ):
        super().__init__(
            params,
            abuse_threshold_per_minute=abuse_threshold_per_minute,
            abuse_lockout_seconds=abuse_lockout_seconds,
            abuse_sweep_threshold=abuse_sweep_threshold,
            clock=clock,
        )
        self.store = LocalBucketStore(
            params,
            lock_duration_seconds=lock_duration_seconds,
            idle_ttl_seconds=idle_ttl_seconds,
            sweep_threshold=sweep_threshold,
            clock=clock,
        )

    def acquire_sync(
        self, token_key: str, block_key: Optional[str] = None, requested_tokens: float = 1
    ) -> ConsumeResult:
        """Synchronous form of ``acquire``."""
        self._validate_requested(requested_tokens)
        full_token_key, full_block_key = self._full_keys(token_key, block_key)

        result = self._check_abuse(full_block_key, requested_tokens)
        if result is None:
            result = self.store.consume(full_token_key, requested_tokens)
        self._log_decision(full_token_key, full_block_key, result)
        return result

    def consume_sync(
        self, token_key: str, block_key: Optional[str] = None, requested_tokens: float = 1
    ) -> float:
        """Synchronous form of ``consume``."""
        return self.acquire_sync(token_key, block_key, requested_tokens).remaining

    async def acquire(
        self, token_key: str, block_key: Optional[str] = None, requested_tokens: float = 1
    ) -> ConsumeResult:
        """Consume tokens and return the full decision."""
        return self.acquire_sync(token_key, block_key, requested_tokens)

    def _sweep_stores(self) -> int:
        return self.store.sweep()


class DistributedTokenBucketLimiter(_TokenBucketLimiterBase):
    """Redis-backed token bucket limiter with local insurance.

    Every instance shares bucket state through Redis. When Redis is not
    ready or the script fails, the request is decided by the insurance
    limiter (if enabled), which represents only this instance's share of
    the distributed budget, or allowed outright.
    """

    backend = "redis"

    def __init__(
        self,
        params: BucketParameters,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        options: Union[DistributedLimiterOptions, Mapping[str, Any], None] = None,
        key_expiry_ms: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        readiness_check_interval: Optional[float] = None,
        idle_ttl_seconds: Optional[float] = None,
        sweep_threshold: Optional[int] = None,
        abuse_sweep_threshold: Optional[int] = None,
        clock: Clock = time.time,
    ):
        """Initialize the distributed limiter.

        Raises:
            ConfigurationError: If no Redis client or URL is available and
                the insurance limiter is disabled.
        """
        self.options = DistributedLimiterOptions.coerce(options)
        super().__init__(
            params,
            abuse_threshold_per_minute=self.options.abuse_threshold_per_minute,
            abuse_lockout_seconds=self.options.abuse_lockout_seconds,
            abuse_sweep_threshold=abuse_sweep_threshold,
            clock=clock,
        )

        self.insurance_limiter: Optional[LocalBucketStore] = None
        if self.options.insurance_enabled:
            insurance_params = BucketParameters(
                refill_rate_per_second=(
                    self.options.insurance_refill_rate_per_second or params.refill_rate_per_second
                ),
                capacity=self.options.insurance_capacity or params.capacity,
                key_prefix=params.key_prefix,
                time_unit_ms=params.time_unit_ms,
            )
            self.insurance_limiter = LocalBucketStore(
                insurance_params,
                idle_ttl_seconds=idle_ttl_seconds,
                sweep_threshold=sweep_threshold,
                clock=clock,
                source="insurance",
            )

        self.store: Optional[RedisBucketStore] = None
        if redis_client is None and not redis_url:
            if self.insurance_limiter is None:
                raise ConfigurationError(
                    "redis_client",
                    "a Redis client or redis_url is required when the insurance limiter is disabled",
                )
            logger.warning("No Redis handle configured; every request uses the insurance limiter")
        else:
            self.store = RedisBucketStore(
                params,
                redis_client=redis_client,
                redis_url=redis_url,
                lock_duration_seconds=self.options.lock_duration_seconds,
                key_expiry_ms=key_expiry_ms,
                timeout_seconds=timeout_seconds,
                readiness_check_interval=readiness_check_interval,
                clock=clock,
            )

    async def acquire(
        self, token_key: str, block_key: Optional[str] = None, requested_tokens: float = 1
    ) -> ConsumeResult:
        """Consume tokens and return the full decision."""
        self._validate_requested(requested_tokens)
        full_token_key, full_block_key = self._full_keys(token_key, block_key)

        result = self._check_abuse(full_block_key, requested_tokens)
        if result is None:
            result = await self._consume_shared(full_token_key, requested_tokens)
        self._log_decision(full_token_key, full_block_key, result)
        return result

    async def _consume_shared(self, full_token_key: str, requested_tokens: float) -> ConsumeResult:
        try:
            if self.store is None:
                raise SharedStoreUnavailableError("not_configured")
            return await self.store.consume(full_token_key, requested_tokens)
        except SharedStoreUnavailableError as e:
            logger.warning(f"{e}. Using fallback for {full_token_key}.")
        except (redis.RedisError, asyncio.TimeoutError, OSError) as e:
            logger.error(f"Redis token bucket script failed for {full_token_key}: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error in Redis token bucket for {full_token_key}: {e}")
        return self._fallback(full_token_key, requested_tokens)

    def _fallback(self, full_token_key: str, requested_tokens: float) -> ConsumeResult:
        """Decide locally when the shared store cannot."""
        if self.insurance_limiter is not None:
            return self.insurance_limiter.consume(full_token_key, requested_tokens)
        logger.warning(
            "Rate limiting fail-open triggered. Request allowed without rate limit check.",
            extra=get_log_context(token_key=full_token_key, backend="fail_open"),
        )
        return ConsumeResult(allowed=True, remaining=1, source="fail_open")

    def _sweep_stores(self) -> int:
        if self.insurance_limiter is None:
            return 0
        return self.insurance_limiter.sweep()

    async def close(self) -> None:
        """Stop background work and close the Redis connection."""
        await super().close()
        if self.store is not None:
            await self.store.close()


TokenBucketLimiterType = Union[TokenBucketLimiter, DistributedTokenBucketLimiter]


def new_local_limiter(
    refill_rate_per_second: float,
    capacity: float,
    key_prefix: str = "",
    **kwargs: Any,
) -> TokenBucketLimiter:
    """Create an in-process limiter.

    Extra keyword arguments (``lock_duration_seconds``,
    ``abuse_threshold_per_minute``, ``abuse_lockout_seconds``,
    ``time_unit_ms``, ``clock``, ...) are passed to TokenBucketLimiter.

    Raises:
        ConfigurationError: If the rate or capacity is not positive.
    """
    time_unit_ms = kwargs.pop("time_unit_ms", 1000)
    params = BucketParameters(refill_rate_per_second, capacity, key_prefix, time_unit_ms)
    return TokenBucketLimiter(params, **kwargs)


def new_distributed_limiter(
    refill_rate_per_second: float,
    capacity: float,
    key_prefix: str,
    redis_client: Optional[Any],
    options: Union[DistributedLimiterOptions, Mapping[str, Any], None] = None,
    **kwargs: Any,
) -> DistributedTokenBucketLimiter:
    """Create a Redis-backed limiter.

    Example:
        >>> limiter = new_distributed_limiter(
        ...     10, 20, "api:", redis.asyncio.from_url("redis://localhost"),
        ...     {"insurance_enabled": True, "abuse_threshold_per_minute": 600},
        ... )
        >>> balance = await limiter.consume("1.2.3.4")

    Raises:
        ConfigurationError: On invalid parameters or a missing Redis handle
            without insurance.
    """
    time_unit_ms = kwargs.pop("time_unit_ms", 1000)
    params = BucketParameters(refill_rate_per_second, capacity, key_prefix, time_unit_ms)
    return DistributedTokenBucketLimiter(params, redis_client=redis_client, options=options, **kwargs)


def limiter_from_settings(
    config: Optional[Settings] = None,
    redis_client: Optional[Any] = None,
) -> TokenBucketLimiterType:
    """Build a limiter from settings.

    Uses the Redis backend when a client is given or ``redis_enabled`` is
    set, otherwise the in-process backend.
    """
    cfg = config or settings
    params = BucketParameters(
        refill_rate_per_second=cfg.refill_rate_per_second,
        capacity=cfg.capacity,
        key_prefix=cfg.key_prefix,
        time_unit_ms=cfg.time_unit_ms,
    )

    if redis_client is not None or cfg.redis_enabled:
        logger.info("Using Redis token bucket backend")
        return DistributedTokenBucketLimiter(
            params,
            redis_client=redis_client,
            redis_url=cfg.redis_url if redis_client is None else None,
            options=DistributedLimiterOptions(
                lock_duration_seconds=cfg.lock_duration_seconds,
                abuse_threshold_per_minute=cfg.abuse_threshold_per_minute,
                abuse_lockout_seconds=cfg.abuse_lockout_seconds,
                insurance_enabled=cfg.insurance_enabled,
                insurance_refill_rate_per_second=cfg.insurance_refill_rate_per_second,
                insurance_capacity=cfg.insurance_capacity,
            ),
            key_expiry_ms=cfg.redis_key_expiry_ms,
            timeout_seconds=cfg.redis_timeout_seconds,
            readiness_check_interval=cfg.readiness_check_interval,
            idle_ttl_seconds=cfg.local_idle_ttl_seconds,
            sweep_threshold=cfg.local_sweep_threshold,
            abuse_sweep_threshold=cfg.abuse_sweep_threshold,
        )

    logger.info("Using in-memory token bucket backend")
    return TokenBucketLimiter(
        params,
        lock_duration_seconds=cfg.lock_duration_seconds,
        abuse_threshold_per_minute=cfg.abuse_threshold_per_minute,
        abuse_lockout_seconds=cfg.abuse_lockout_seconds,
        idle_ttl_seconds=cfg.local_idle_ttl_seconds,
        sweep_threshold=cfg.local_sweep_threshold,
        abuse_sweep_threshold=cfg.abuse_sweep_threshold,
    )


_limiter: Optional[TokenBucketLimiterType] = None


def get_limiter(redis_client: Optional[Any] = None) -> TokenBucketLimiterType:
    """Get the process-wide limiter built from settings."""
    global _limiter
    if _limiter is None:
        _limiter = limiter_from_settings(redis_client=redis_client)
    return _limiter


def reset_limiter() -> None:
    """Reset the process-wide limiter instance.

    This is primarily useful for testing.
    """
    global _limiter
    _limiter = None
