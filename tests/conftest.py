"""Shared fixtures: a controllable clock and a fake Redis that runs the
token bucket script contract in Python."""

import math
from unittest.mock import AsyncMock

import pytest

from bucketguard.limiter import reset_limiter


START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced time source returning UNIX seconds."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis.

    ``eval`` interprets TOKEN_BUCKET_SCRIPT (KEYS tokens/ts/lock, ARGV
    capacity, amount, inflow, unit, lock seconds, expiry ms, now) against a
    dict with millisecond expiries driven by the same clock as the limiter.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.data = {}
        self.expires = {}
        self.eval_calls = []
        self.ping = AsyncMock(return_value=True)
        self.aclose = AsyncMock()

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _get(self, key):
        expires_at = self.expires.get(key)
        if expires_at is not None and expires_at <= self._now_ms():
            self.data.pop(key, None)
            self.expires.pop(key, None)
        return self.data.get(key)

    def _set(self, key, value, px=None):
        self.data[key] = str(value)
        if px is not None:
            self.expires[key] = self._now_ms() + px
        else:
            self.expires.pop(key, None)

    async def eval(self, script, num_keys, *args):
        self.eval_calls.append((num_keys, args))
        tokens_key, ts_key, lock_key = args[:num_keys]
        capacity, amount, inflow_per_unit, unit, lock_seconds, expire_ms, now = (
            float(a) for a in args[num_keys:]
        )

        if self._get(lock_key) is not None:
            return [1, "-1"]

        last_time = self._get(ts_key)
        current = self._get(tokens_key)
        changed = False
        if last_time is None or current is None:
            current = capacity
            last_time = now
            changed = True
        else:
            current = float(current)
            last_time = float(last_time)

        elapsed = max(0.0, now - last_time)
        if elapsed < unit:
            balance = current - amount
        else:
            units = math.floor(elapsed / unit)
            last_time += units * unit
            changed = True
            balance = current + units * inflow_per_unit - amount

        balance = min(balance, capacity)

        if balance < 0:
            if lock_seconds > 0 and self._get(lock_key) is None:
                self._set(lock_key, "1", px=int(lock_seconds * 1000))
            return [1, str(balance)]

        self._set(tokens_key, balance, px=int(expire_ms))
        if changed:
            self._set(ts_key, last_time, px=int(expire_ms))
        else:
            self.expires[ts_key] = self._now_ms() + int(expire_ms)
        return [0, str(balance)]


class FakeRequest:
    """Minimal ASGI-shaped request carrying headers and a peer address."""

    class _Client:
        def __init__(self, host):
            self.host = host

    def __init__(self, headers=None, host=None):
        self.headers = headers or {}
        self.client = self._Client(host) if host is not None else None


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset the process-wide limiter before and after each test."""
    reset_limiter()
    yield
    reset_limiter()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def make_request():
    return FakeRequest
