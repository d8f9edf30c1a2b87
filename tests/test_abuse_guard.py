"""Tests for the fixed-window abuse guard."""

from unittest.mock import patch

import pytest

from bucketguard.limiter.abuse_guard import AbuseGuard


class TestAbuseGuard:
    """Tests for counting and lockout."""

    @pytest.fixture
    def guard(self, clock):
        return AbuseGuard(threshold=3, lockout_seconds=60, clock=clock)

    def test_disabled_guard_never_blocks(self, clock):
        guard = AbuseGuard(clock=clock)
        assert guard.enabled is False
        for _ in range(100):
            assert guard.record("ip") is False
        assert guard.is_blocked("ip") is False
        assert len(guard) == 0

    def test_threshold_attempt_installs_lockout(self, guard):
        assert guard.record("ip") is False
        assert guard.record("ip") is False
        assert guard.is_blocked("ip") is False

        assert guard.record("ip") is True
        assert guard.is_blocked("ip") is True

    def test_lockout_expires_and_state_resets(self, guard, clock):
        for _ in range(3):
            guard.record("ip")

        clock.advance(59)
        assert guard.is_blocked("ip") is True

        clock.advance(1)
        assert guard.is_blocked("ip") is False
        assert guard.snapshot("ip") == {
            "blocked_until_ms": None,
            "consumed": None,
            "window_start_ms": None,
        }

    def test_window_resets_after_one_minute(self, guard, clock):
        guard.record("ip")
        guard.record("ip")
        clock.advance(60)

        assert guard.record("ip") is False
        assert guard.snapshot("ip")["consumed"] == 1

    def test_block_keys_are_independent(self, guard):
        for _ in range(3):
            guard.record("ip1")
        guard.record("ip2")

        assert guard.is_blocked("ip1") is True
        assert guard.is_blocked("ip2") is False
        assert guard.snapshot("ip2")["consumed"] == 1

    def test_rejects_negative_threshold(self):
        with pytest.raises(ValueError):
            AbuseGuard(threshold=-1)


class TestAbuseGuardSweep:
    """Tests for expiry of lockouts and windows."""

    def test_sweep_removes_expired_entries(self, clock):
        guard = AbuseGuard(threshold=2, lockout_seconds=10, clock=clock)
        guard.record("locked")
        guard.record("locked")
        guard.record("counting")
        assert len(guard) == 2

        clock.advance(60)
        assert guard.sweep() == 2
        assert len(guard) == 0

    def test_lazy_sweep_above_threshold(self, clock):
        guard = AbuseGuard(threshold=100, sweep_threshold=2, clock=clock)
        guard.record("a")
        guard.record("b")
        clock.advance(61)
        guard.record("c")

        assert len(guard) == 1
        assert guard.snapshot("c")["consumed"] == 1

    def test_lazy_sweeps_stay_bounded_with_many_live_keys(self, clock):
        """Live entries above the threshold must not cause a sweep per attempt."""
        guard = AbuseGuard(threshold=10_000, clock=clock)
        for i in range(1000):
            guard.record(f"ip{i}")

        with patch.object(guard, "_sweep_locked", wraps=guard._sweep_locked) as sweep:
            for _ in range(500):
                guard.record("ip0")
            for i in range(1000, 1500):
                guard.record(f"ip{i}")

        assert sweep.call_count == 0
        assert len(guard) == 1500

    def test_next_sweep_once_live_entries_double(self, clock):
        guard = AbuseGuard(threshold=10_000, sweep_threshold=10, clock=clock)
        with patch.object(guard, "_sweep_locked", wraps=guard._sweep_locked) as sweep:
            for i in range(11):
                guard.record(f"ip{i}")
            assert sweep.call_count == 1

            for i in range(11, 22):
                guard.record(f"ip{i}")
            assert sweep.call_count == 1

            guard.record("ip22")
            assert sweep.call_count == 2

    def test_reset(self, clock):
        guard = AbuseGuard(threshold=1, clock=clock)
        guard.record("a")
        guard.record("b")

        guard.reset("a")
        assert guard.is_blocked("a") is False
        assert guard.is_blocked("b") is True

        guard.reset()
        assert len(guard) == 0
