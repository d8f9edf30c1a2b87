"""In-memory abuse guard in front of the token bucket stores.

Counts consumption attempts per block key in a fixed one-minute window and
locks the key out for a cooldown once the count reaches the threshold. It runs
before any bucket logic, so a blocked key never reaches Redis, and it keeps
working while Redis is down.
"""

import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Union

from bucketguard.core.logging import get_log_context, get_logger
from bucketguard.limiter.models import Clock, now_ms

logger = get_logger(__name__)

WINDOW_MS = 60_000


@dataclass
class _Lockout:
    """A block key that is locked out until ``blocked_until_ms``."""
    blocked_until_ms: int


@dataclass
class _Window:
    """Consumption attempts counted in the current one-minute window."""
    consumed: int
    window_start_ms: int


class AbuseGuard:
    """Fixed-window attempt counter with temporary lockout.

    Usage:
        guard = AbuseGuard(threshold=100, lockout_seconds=60)
        if guard.is_blocked(block_key):
            return 0
        guard.record(block_key)
    """

    DEFAULT_SWEEP_THRESHOLD = 999

    def __init__(
        self,
        threshold: Optional[int] = None,
        lockout_seconds: float = 60,
        sweep_threshold: Optional[int] = None,
        clock: Clock = time.time,
    ):
        """Initialize the guard.

        Args:
            threshold: Attempts per minute that trigger a lockout; None or 0
                disables counting (lockouts are never installed)
            lockout_seconds: Lockout duration
            sweep_threshold: Entry count above which expired entries are
                collected in one pass
            clock: Time source returning UNIX seconds
        """
        if threshold is not None and threshold < 0:
            raise ValueError("threshold must be >= 0")
        if lockout_seconds < 0:
            raise ValueError("lockout_seconds must be >= 0")
        self.threshold = threshold or 0
        self.lockout_seconds = lockout_seconds
        self._sweep_threshold = sweep_threshold or self.DEFAULT_SWEEP_THRESHOLD
        # Entry count that triggers the next lazy sweep; raised after each sweep
        self._next_sweep_at = self._sweep_threshold
        self._clock = clock
        self._lockouts: Dict[str, _Lockout] = {}
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.threshold > 0

    def __len__(self) -> int:
        return len(self._lockouts) + len(self._windows)

    def is_blocked(self, block_key: str, current_ms: Optional[int] = None) -> bool:
        """Check whether ``block_key`` is locked out.

        An expired lockout is removed together with the key's window so the
        key starts counting afresh.
        """
        if current_ms is None:
            current_ms = now_ms(self._clock)
        with self._lock:
            lockout = self._lockouts.get(block_key)
            if lockout is None:
                return False
            if current_ms < lockout.blocked_until_ms:
                return True
            del self._lockouts[block_key]
            self._windows.pop(block_key, None)
            return False

    def record(self, block_key: str, current_ms: Optional[int] = None) -> bool:
        """Count one consumption attempt for ``block_key``.

        The attempt that reaches the threshold is still served; the lockout
        applies from the next attempt on.

        Returns:
            True if this attempt installed a lockout.
        """
        if not self.enabled:
            return False
        if current_ms is None:
            current_ms = now_ms(self._clock)

        with self._lock:
            window = self._windows.get(block_key)
            if window is None or current_ms - window.window_start_ms >= WINDOW_MS:
                window = _Window(consumed=0, window_start_ms=current_ms)
                self._windows[block_key] = window
            window.consumed += 1

            blocked = False
            if window.consumed >= self.threshold:
                del self._windows[block_key]
                self._lockouts[block_key] = _Lockout(
                    blocked_until_ms=current_ms + int(self.lockout_seconds * 1000)
                )
                blocked = True

            if len(self._lockouts) + len(self._windows) > self._next_sweep_at:
                self._sweep_locked(current_ms)

        if blocked:
            logger.warning(
                f"Block key locked out for {self.lockout_seconds}s after {self.threshold} attempts in one minute",
                extra=get_log_context(block_key=block_key, backend="abuse_guard"),
            )
        return blocked

    def sweep(self, current_ms: Optional[int] = None) -> int:
        """Remove expired lockouts and stale windows.

        Returns:
            Number of entries removed.
        """
        if current_ms is None:
            current_ms = now_ms(self._clock)
        with self._lock:
            return self._sweep_locked(current_ms)

    def _sweep_locked(self, current_ms: int) -> int:
        expired_lockouts = [
            key for key, lockout in self._lockouts.items()
            if lockout.blocked_until_ms <= current_ms
        ]
        for key in expired_lockouts:
            del self._lockouts[key]

        stale_windows = [
            key for key, window in self._windows.items()
            if current_ms - window.window_start_ms >= WINDOW_MS
        ]
        for key in stale_windows:
            del self._windows[key]

        self._next_sweep_at = max(
            self._sweep_threshold, 2 * (len(self._lockouts) + len(self._windows))
        )
        return len(expired_lockouts) + len(stale_windows)

    def reset(self, block_key: Optional[str] = None) -> None:
        """Forget state for one block key, or for all keys when omitted."""
        with self._lock:
            if block_key is None:
                self._lockouts.clear()
                self._windows.clear()
                return
            self._lockouts.pop(block_key, None)
            self._windows.pop(block_key, None)

    def snapshot(self, block_key: str) -> Dict[str, Union[int, None]]:
        """Raw state for ``block_key`` (for diagnostics and tests)."""
        with self._lock:
            lockout = self._lockouts.get(block_key)
            window = self._windows.get(block_key)
            return {
                "blocked_until_ms": lockout.blocked_until_ms if lockout else None,
                "consumed": window.consumed if window else None,
                "window_start_ms": window.window_start_ms if window else None,
            }
