"""Unit tests for the fixed-window rate limiter.

Run with: pytest authguard/services/tests/test_rate_limiter.py -v
"""

from datetime import datetime, timedelta

import pytest

from ...config import RateLimitConfig
from ...errors import ConfigurationError, StoreUnavailable
from ...stores.counter_store import MemoryCounterStore
from ..rate_limiter import RateLimiter, RateLimitPolicy

# Epoch ms of NOON is a whole number of minutes, so a 60 s window starts here
NOON = datetime(2026, 3, 2, 12, 0, 0)


class FakeClock:
    """Settable clock."""

    def __init__(self, now: datetime = NOON):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class DownStore(MemoryCounterStore):
    """Counter store whose every call fails."""

    def incr(self, key, ttl_seconds):
        raise StoreUnavailable("connection refused")

    def get(self, key):
        raise StoreUnavailable("connection refused")

    def set(self, key, value, ttl_seconds=None):
        raise StoreUnavailable("connection refused")


def make_limiter(clock=None, store=None, unknown_policy: str = "allow") -> RateLimiter:
    """Limiter with one sensitive and one ordinary 10-per-minute policy."""
    clock = clock or FakeClock()
    return RateLimiter(
        store or MemoryCounterStore(clock=clock),
        RateLimitConfig(unknown_policy=unknown_policy),
        clock,
        policies=[
            RateLimitPolicy("test_login", limit=10, window_ms=60000, sensitive=True),
            RateLimitPolicy("test_api", limit=10, window_ms=60000),
        ],
    )


# =============================================================================
# Window counting
# =============================================================================

class TestFixedWindow:
    """Tests for counting within and across windows."""

    def test_eleventh_request_rejected(self):
        """Should allow 10 requests and reject the 11th with remaining 0 and a retry time."""
        limiter = make_limiter()

        results = [limiter.check("test_api", "203.0.113.5") for _ in range(11)]

        assert all(r.allowed for r in results[:10])
        assert [r.remaining for r in results[:3]] == [9, 8, 7]
        assert results[9].remaining == 0
        rejected = results[10]
        assert not rejected.allowed
        assert rejected.remaining == 0
        assert rejected.retry_after == 60
        assert rejected.reset_time_ms == results[0].reset_time_ms

    def test_retry_after_counts_down_within_window(self):
        """Should report the seconds left until the window resets."""
        clock = FakeClock()
        limiter = make_limiter(clock)
        for _ in range(10):
            limiter.check("test_api", "203.0.113.5")

        clock.advance(seconds=45, milliseconds=500)
        result = limiter.check("test_api", "203.0.113.5")

        assert not result.allowed
        assert result.retry_after == 15

    def test_new_window_resets_count(self):
        """Should allow again once the next window starts."""
        clock = FakeClock()
        limiter = make_limiter(clock)
        for _ in range(11):
            limiter.check("test_api", "203.0.113.5")

        clock.advance(seconds=60)
        result = limiter.check("test_api", "203.0.113.5")

        assert result.allowed
        assert result.remaining == 9

    def test_actors_are_independent(self):
        """Should count each actor key separately."""
        limiter = make_limiter()
        for _ in range(11):
            limiter.check("test_api", "203.0.113.5")

        assert limiter.check("test_api", "203.0.113.6").allowed

    def test_status_does_not_count(self):
        """Should report the window without consuming a request."""
        limiter = make_limiter()
        limiter.check("test_api", "203.0.113.5")

        first = limiter.status("test_api", "203.0.113.5")
        second = limiter.status("test_api", "203.0.113.5")

        assert first.remaining == second.remaining == 9

    def test_exhaust_rejects_next_check(self):
        """Should reject the next request after the window is seeded at the limit."""
        limiter = make_limiter()
        limiter.check("test_api", "203.0.113.5")

        limiter.exhaust("test_api", "203.0.113.5")

        assert not limiter.check("test_api", "203.0.113.5").allowed

    def test_reset_clears_actor(self):
        """Should allow immediately after a reset."""
        limiter = make_limiter()
        for _ in range(11):
            limiter.check("test_api", "203.0.113.5")

        assert limiter.reset("test_api", "203.0.113.5") == 1
        assert limiter.check("test_api", "203.0.113.5").allowed


# =============================================================================
# Policies and degraded store
# =============================================================================

class TestPolicies:
    """Tests for unknown policies, sensitivity and store outages."""

    def test_unknown_policy_allows_by_default(self):
        """Should allow a request under a policy nobody registered."""
        result = make_limiter().check("nonexistent", "203.0.113.5")

        assert result.allowed
        assert result.policy is None

    def test_unknown_policy_denied_when_configured(self):
        """Should raise ConfigurationError when unknown policies are denied."""
        with pytest.raises(ConfigurationError):
            make_limiter(unknown_policy="deny").check("nonexistent", "203.0.113.5")

    def test_sensitive_policy_fails_closed(self):
        """Should reject authentication-class checks when the store is down."""
        result = make_limiter(store=DownStore()).check("test_login", "203.0.113.5")

        assert not result.allowed
        assert result.degraded
        assert result.retry_after > 0

    def test_ordinary_policy_fails_open(self):
        """Should allow ordinary checks when the store is down."""
        result = make_limiter(store=DownStore()).check("test_api", "203.0.113.5")

        assert result.allowed
        assert result.degraded

    def test_sensitive_policy_cannot_be_removed(self):
        """Should refuse to remove or downgrade a sensitive policy."""
        limiter = make_limiter()

        with pytest.raises(ConfigurationError):
            limiter.remove_policy("test_login")
        with pytest.raises(ConfigurationError):
            limiter.register_policy(RateLimitPolicy("test_login", limit=1000, window_ms=60000))

    def test_ordinary_policy_can_be_removed(self):
        """Should drop a non-sensitive policy."""
        limiter = make_limiter()

        limiter.remove_policy("test_api")

        assert limiter.get_policy("test_api") is None

    def test_invalid_policy_rejected(self):
        """Should reject a policy without a positive limit."""
        with pytest.raises(ConfigurationError):
            RateLimitPolicy("broken", limit=0, window_ms=60000)

    def test_default_login_policy(self):
        """Should ship the login policy as 10 per 15 minutes, sensitive."""
        limiter = RateLimiter(MemoryCounterStore())

        policy = limiter.get_policy("login")

        assert policy.limit == 10
        assert policy.window_ms == 15 * 60 * 1000
        assert policy.sensitive
