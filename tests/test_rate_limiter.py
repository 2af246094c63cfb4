"""
Rate Limiter Tests
------------------
Tests cover:
- Sliding window admission and denial
- Per-identity isolation
- Remaining/reset metadata and headers
- Idle bucket cleanup and the background sweeper
"""

from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from api.rate_limiter import RateLimitConfig, RateLimitInfo, RateLimiter


@pytest.fixture
def limiter(clock):
    return RateLimiter(RateLimitConfig(max_requests=5, window_seconds=10), name="test", clock=clock)


class TestConfig:

    def test_defaults(self):
        config = RateLimitConfig()

        assert config.max_requests == 10
        assert config.window_seconds == 10.0
        assert config.cleanup_interval_seconds == 50.0

    @pytest.mark.parametrize("kwargs", [
        {"max_requests": 0},
        {"window_seconds": 0},
        {"window_seconds": -1},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            RateLimitConfig(**kwargs)


class TestSlidingWindow:

    def test_sixth_call_denied(self, limiter):
        """Five calls within the window pass, the sixth is refused."""
        admitted = [limiter.check("1.2.3.4") for _ in range(6)]

        assert admitted == [True] * 5 + [False]

    def test_denied_calls_not_recorded(self, limiter, clock):
        for _ in range(5):
            limiter.check("a")
        for _ in range(20):
            assert not limiter.check("a")

        clock.advance(10)

        assert limiter.check("a")

    def test_window_slides(self, limiter, clock):
        """Capacity comes back one slot at a time as old calls age out."""
        limiter.check("a")
        clock.advance(4)
        for _ in range(4):
            limiter.check("a")
        assert not limiter.check("a")

        clock.advance(6)
        assert limiter.check("a")
        assert not limiter.check("a")

    def test_boundary_is_exclusive(self, limiter, clock):
        """A call exactly one window old no longer counts."""
        for _ in range(5):
            limiter.check("a")

        clock.advance(9.999)
        assert not limiter.check("a")
        clock.advance(0.001)
        assert limiter.check("a")

    def test_identities_isolated(self, limiter):
        for _ in range(5):
            limiter.check("a")

        assert not limiter.check("a")
        assert limiter.check("b")

    def test_reset_identity(self, limiter):
        for _ in range(5):
            limiter.check("a")

        limiter.reset("a")

        assert limiter.check("a")


class TestMetadata:

    def test_remaining_and_reset_after(self, limiter, clock):
        assert limiter.remaining("new") == 5
        assert limiter.reset_after("new") == 0.0

        limiter.check("a")
        clock.advance(3)
        limiter.check("a")

        assert limiter.remaining("a") == 3
        assert limiter.reset_after("a") == pytest.approx(7.0)

    def test_info_and_headers(self, limiter, clock):
        for _ in range(5):
            limiter.check("a")
        clock.advance(2.5)

        info = limiter.info("a")

        assert info.limit == 5
        assert info.remaining == 0
        assert info.reset_after_seconds == pytest.approx(7.5)
        assert info.retry_after == 8
        assert info.headers() == {
            "X-RateLimit-Limit": "5",
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": "8",
        }

    def test_retry_after_at_least_one(self):
        assert RateLimitInfo(limit=5, remaining=0, reset_after_seconds=0.0).retry_after == 1

    def test_to_dict(self):
        info = RateLimitInfo(limit=5, remaining=2, reset_after_seconds=1.23456)

        assert info.to_dict() == {"limit": 5, "remaining": 2, "reset_after_seconds": 1.235}


class TestCleanup:

    def test_cleanup_drops_idle_buckets(self, limiter, clock):
        limiter.check("old")
        clock.advance(6)
        limiter.check("recent")
        clock.advance(5)

        removed = limiter.cleanup()

        assert removed == 1
        assert limiter.tracked_identities == 1

    def test_cleanup_keeps_state_correct(self, limiter, clock):
        """A swept identity starts fresh with a full allowance."""
        for _ in range(5):
            limiter.check("a")
        clock.advance(11)
        limiter.cleanup()

        assert limiter.remaining("a") == 5
        assert limiter.tracked_identities == 0

    def test_clear(self, limiter):
        limiter.check("a")
        limiter.check("b")

        limiter.clear()

        assert limiter.tracked_identities == 0

    def test_sweeper_start_stop(self, clock):
        limiter = RateLimiter(
            RateLimitConfig(max_requests=1, window_seconds=1, cleanup_interval_seconds=0.01),
            clock=clock,
        )
        limiter.check("a")
        clock.advance(2)

        limiter.start()
        limiter.start()
        try:
            for _ in range(200):
                if limiter.tracked_identities == 0:
                    break
                limiter._stop.wait(0.01)
        finally:
            limiter.stop()

        assert limiter.tracked_identities == 0
        assert limiter._sweeper is None
