"""Token bucket rate limiting with in-process and Redis-backed stores.

The Redis store runs refill and consume as one atomic Lua script, with an
optional local insurance limiter for when Redis is unavailable.
"""

from .abuse_guard import AbuseGuard
from .memory import LocalBucketStore
from .models import Bucket, BucketParameters, ConsumeResult, refill_and_consume
from .redis_lua import TOKEN_BUCKET_SCRIPT
from .redis_store import RedisBucketStore
from .service import (
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
    "AbuseGuard",
    "Bucket",
    "BucketParameters",
    "ConsumeResult",
    "refill_and_consume",
    "LocalBucketStore",
    "TOKEN_BUCKET_SCRIPT",
    "RedisBucketStore",
    "DistributedLimiterOptions",
    "DistributedTokenBucketLimiter",
    "TokenBucketLimiter",
    "get_limiter",
    "limiter_from_settings",
    "new_distributed_limiter",
    "new_local_limiter",
    "reset_limiter",
]
