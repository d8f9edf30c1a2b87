"""bucketguard: token bucket rate limiting, locally or shared through Redis."""

from bucketguard.exceptions import ConfigurationError, LimiterError, SharedStoreUnavailableError
from bucketguard.limiter import (
    ConsumeResult,
    DistributedLimiterOptions,
    DistributedTokenBucketLimiter,
    TokenBucketLimiter,
    get_limiter,
    limiter_from_settings,
    new_distributed_limiter,
    new_local_limiter,
    reset_limiter,
)

__all__ = [
    "ConfigurationError",
    "LimiterError",
    "SharedStoreUnavailableError",
    "ConsumeResult",
    "DistributedLimiterOptions",
    "DistributedTokenBucketLimiter",
    "TokenBucketLimiter",
    "get_limiter",
    "limiter_from_settings",
    "new_distributed_limiter",
    "new_local_limiter",
    "reset_limiter",
]
