"""Tests for the sliding-window rate limiter."""
import pytest

from pkg.taskboard.errors import RateLimited
from pkg.taskboard.ratelimit import SlidingWindowLimiter


class TestSlidingWindowLimiter:

    def test_allows_up_to_limit(self):
        limiter = SlidingWindowLimiter(max_requests=3, window_secs=60)
        for t in range(3):
            limiter.hit("u1", now=float(t))
        assert limiter.remaining("u1", now=3.0) == 0
        with pytest.raises(RateLimited) as exc:
            limiter.hit("u1", now=3.0)
        # Oldest hit (t=0) leaves the window at t=60
        assert exc.value.retry_after == pytest.approx(57.0)

    def test_window_slides(self):
        limiter = SlidingWindowLimiter(max_requests=2, window_secs=10)
        limiter.hit("u1", now=0.0)
        limiter.hit("u1", now=5.0)
        limiter.hit("u1", now=10.5)
        assert limiter.remaining("u1", now=10.5) == 0
        assert limiter.remaining("u1", now=16.0) == 1

    def test_keys_are_independent(self):
        limiter = SlidingWindowLimiter(max_requests=1, window_secs=60)
        limiter.hit("u1", now=0.0)
        limiter.hit("u2", now=0.0)
        with pytest.raises(RateLimited):
            limiter.hit("u1", now=1.0)

    def test_rejected_hits_are_not_counted(self):
        limiter = SlidingWindowLimiter(max_requests=1, window_secs=10)
        limiter.hit("u1", now=0.0)
        for t in (1.0, 2.0, 3.0):
            with pytest.raises(RateLimited):
                limiter.hit("u1", now=t)
        limiter.hit("u1", now=10.5)

    def test_reset(self):
        limiter = SlidingWindowLimiter(max_requests=1, window_secs=60)
        limiter.hit("u1", now=0.0)
        limiter.reset("u1")
        assert limiter.remaining("u1", now=1.0) == 1
        limiter.hit("u2", now=0.0)
        limiter.reset()
        assert limiter.remaining("u2", now=1.0) == 1
        assert len(limiter) == 0
