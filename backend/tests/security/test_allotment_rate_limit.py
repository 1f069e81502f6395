"""
tests/security/test_allotment_rate_limit.py

滑动窗口限流器
"""
from datetime import datetime, timezone

from app.security.rate_limit import RateLimiter
from core.allotment.clock import FixedClock

NOW = datetime(2023, 6, 1, 9, 0, tzinfo=timezone.utc)


class TestRateLimiter:
    """计数、窗口滑动与空闲键清理"""

    def test_limit_and_retry_after(self):
        clock = FixedClock(NOW)
        limiter = RateLimiter(clock=clock)

        assert limiter.check("booking", "10.0.0.1", 2).remaining == 1
        clock.advance(seconds=20)
        assert limiter.check("booking", "10.0.0.1", 2).allowed
        rejected = limiter.check("booking", "10.0.0.1", 2)

        assert not rejected.allowed
        assert rejected.retry_after_seconds == 40
        clock.advance(seconds=40)
        assert limiter.check("booking", "10.0.0.1", 2).allowed

    def test_idle_keys_are_dropped(self):
        clock = FixedClock(NOW)
        limiter = RateLimiter(clock=clock)
        for i in range(5):
            limiter.check("booking", f"10.0.0.{i}", 10)
        assert len(limiter) == 5

        clock.advance(seconds=61)
        limiter.check("booking", "10.0.0.9", 10)

        assert len(limiter) == 1

    def test_active_keys_survive_sweep(self):
        clock = FixedClock(NOW)
        limiter = RateLimiter(clock=clock)
        limiter.check("booking", "idle", 10)
        clock.advance(seconds=30)
        limiter.check("booking", "busy", 10)

        clock.advance(seconds=31)
        limiter.check("booking", "busy", 10)

        assert len(limiter) == 1
        assert limiter.check("booking", "busy", 2).allowed is False
