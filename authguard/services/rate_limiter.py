"""Rate Limiter - fixed-window counters over the shared counter store.

Key layout:  rate_limit:{policy}:{actor}:{window_index}
             window_index = floor(now_ms / window_ms)

Every check increments the window counter and refreshes its TTL to the window
length, so stale windows expire by themselves.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..config import RateLimitConfig
from ..errors import ConfigurationError, StoreUnavailable
from ..stores.counter_store import CounterStore
from ..utils.clock import to_epoch_ms, utcnow

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS


@dataclass
class RateLimitPolicy:
    """Limit per actor per fixed window."""
    name: str
    limit: int
    window_ms: int
    # Authentication-class policies deny when the store is down and cannot be removed
    sensitive: bool = False

    def __post_init__(self):
        if self.limit <= 0 or self.window_ms <= 0:
            raise ConfigurationError(f"Rate limit policy {self.name} needs a positive limit and window")

    @property
    def ttl_seconds(self) -> int:
        return int(math.ceil(self.window_ms / 1000))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'limit': self.limit,
            'window_ms': self.window_ms,
            'sensitive': self.sensitive,
        }


@dataclass
class RateLimitResult:
    allowed: bool
    policy: Optional[str]
    limit: int
    remaining: int
    reset_time_ms: int
    retry_after: Optional[int] = None
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allowed': self.allowed,
            'policy': self.policy,
            'limit': self.limit,
            'remaining': self.remaining,
            'reset_time': self.reset_time_ms,
            'retry_after': self.retry_after,
            'degraded': self.degraded,
        }


DEFAULT_POLICIES: List[RateLimitPolicy] = [
    RateLimitPolicy("login", limit=10, window_ms=15 * MINUTE_MS, sensitive=True),
    RateLimitPolicy("registration", limit=3, window_ms=HOUR_MS, sensitive=True),
    RateLimitPolicy("password_reset", limit=3, window_ms=HOUR_MS, sensitive=True),
    RateLimitPolicy("admin", limit=200, window_ms=15 * MINUTE_MS, sensitive=True),
    RateLimitPolicy("api", limit=100, window_ms=15 * MINUTE_MS),
    RateLimitPolicy("api_strict", limit=20, window_ms=15 * MINUTE_MS),
    RateLimitPolicy("batch", limit=5, window_ms=MINUTE_MS),
    RateLimitPolicy("email_validation", limit=10, window_ms=MINUTE_MS),
    RateLimitPolicy("university_management", limit=10, window_ms=MINUTE_MS),
]


class RateLimiter:
    """Named fixed-window policies keyed by actor."""

    def __init__(
        self,
        store: CounterStore,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        policies: Optional[List[RateLimitPolicy]] = None,
    ):
        self.store = store
        self.config = config or RateLimitConfig()
        self.clock = clock
        self._policies: Dict[str, RateLimitPolicy] = {}
        for policy in (policies if policies is not None else DEFAULT_POLICIES):
            self.register_policy(policy)

    # -------------------------------------------------------------------------
    # Policy registry
    # -------------------------------------------------------------------------

    def register_policy(self, policy: RateLimitPolicy):
        existing = self._policies.get(policy.name)
        if existing and existing.sensitive and not policy.sensitive:
            raise ConfigurationError(f"Policy {policy.name} is authentication-class and must stay sensitive")
        self._policies[policy.name] = policy

    def remove_policy(self, name: str):
        policy = self._policies.get(name)
        if policy is None:
            return
        if policy.sensitive:
            raise ConfigurationError(f"Policy {name} is authentication-class and cannot be removed")
        del self._policies[name]

    def get_policy(self, name: str) -> Optional[RateLimitPolicy]:
        return self._policies.get(name)

    def list_policies(self) -> List[RateLimitPolicy]:
        return list(self._policies.values())

    def _resolve(self, name: str) -> Optional[RateLimitPolicy]:
        policy = self._policies.get(name)
        if policy is not None:
            return policy
        if self.config.unknown_policy == "deny":
            raise ConfigurationError(f"No rate limit policy named {name}")
        logger.warning(f"No rate limit policy named {name}; allowing request")
        return None

    # -------------------------------------------------------------------------
    # Window arithmetic
    # -------------------------------------------------------------------------

    def _window(self, policy: RateLimitPolicy, now_ms: int):
        index = now_ms // policy.window_ms
        reset_ms = (index + 1) * policy.window_ms
        return index, reset_ms

    @staticmethod
    def window_key(policy_name: str, actor_key: str, index: int) -> str:
        return f"rate_limit:{policy_name}:{actor_key}:{index}"

    @staticmethod
    def _retry_after(reset_ms: int, now_ms: int) -> int:
        return max(1, int(math.ceil((reset_ms - now_ms) / 1000)))

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def check(self, policy_name: str, actor_key: str) -> RateLimitResult:
        """
        Count one request for ``actor_key`` under ``policy_name``.

        Args:
            policy_name: Registered policy name (e.g. "login")
            actor_key: IP, user id or a composite key

        Returns:
            RateLimitResult; retry_after is set only when rejected

        Raises:
            ConfigurationError: unknown policy while unknown_policy is "deny"
        """
        policy = self._resolve(policy_name)
        now_ms = to_epoch_ms(self.clock())
        if policy is None:
            return RateLimitResult(allowed=True, policy=None, limit=0, remaining=0, reset_time_ms=now_ms)

        index, reset_ms = self._window(policy, now_ms)
        try:
            count = self.store.incr(self.window_key(policy.name, actor_key, index), policy.ttl_seconds)
        except StoreUnavailable as e:
            return self._store_down(policy, reset_ms, now_ms, e)

        remaining = policy.limit - count
        if remaining < 0:
            retry_after = self._retry_after(reset_ms, now_ms)
            logger.warning(
                f"Rate limit exceeded for {actor_key} on {policy.name}: {count}/{policy.limit}, "
                f"retry after {retry_after}s"
            )
            return RateLimitResult(
                allowed=False,
                policy=policy.name,
                limit=policy.limit,
                remaining=0,
                reset_time_ms=reset_ms,
                retry_after=retry_after,
            )
        return RateLimitResult(
            allowed=True,
            policy=policy.name,
            limit=policy.limit,
            remaining=remaining,
            reset_time_ms=reset_ms,
        )

    def _store_down(self, policy: RateLimitPolicy, reset_ms: int, now_ms: int, error: Exception) -> RateLimitResult:
        if policy.sensitive:
            logger.error(f"Counter store unavailable, failing closed for {policy.name}: {error}")
            return RateLimitResult(
                allowed=False,
                policy=policy.name,
                limit=policy.limit,
                remaining=0,
                reset_time_ms=reset_ms,
                retry_after=self._retry_after(reset_ms, now_ms),
                degraded=True,
            )
        logger.error(f"Counter store unavailable, failing open for {policy.name}: {error}")
        return RateLimitResult(
            allowed=True,
            policy=policy.name,
            limit=policy.limit,
            remaining=policy.limit,
            reset_time_ms=reset_ms,
            degraded=True,
        )

    def status(self, policy_name: str, actor_key: str) -> RateLimitResult:
        """Current window state without counting a request."""
        policy = self._policies.get(policy_name)
        if policy is None:
            raise ConfigurationError(f"No rate limit policy named {policy_name}")
        now_ms = to_epoch_ms(self.clock())
        index, reset_ms = self._window(policy, now_ms)
        count = self.store.get(self.window_key(policy.name, actor_key, index)) or 0
        allowed = count < policy.limit
        return RateLimitResult(
            allowed=allowed,
            policy=policy.name,
            limit=policy.limit,
            remaining=max(0, policy.limit - count),
            reset_time_ms=reset_ms,
            retry_after=None if allowed else self._retry_after(reset_ms, now_ms),
        )

    def exhaust(self, policy_name: str, actor_key: str, limit: Optional[int] = None,
                window_ms: Optional[int] = None):
        """
        Seed the actor's current window at the limit so the next check is rejected.

        Unknown policy names get an ad-hoc non-sensitive policy built from
        ``limit`` / ``window_ms`` (defaults 10 per minute).
        """
        policy = self._policies.get(policy_name)
        if policy is None:
            policy = RateLimitPolicy(policy_name, limit=limit or 10, window_ms=window_ms or MINUTE_MS)
            self._policies[policy_name] = policy
        now_ms = to_epoch_ms(self.clock())
        index, _ = self._window(policy, now_ms)
        key = self.window_key(policy.name, actor_key, index)
        current = self.store.get(key) or 0
        self.store.set(key, max(current, policy.limit), policy.ttl_seconds)
        logger.warning(f"Rate limit applied to {actor_key} on {policy.name}: window seeded at {policy.limit}")

    def reset(self, policy_name: str, actor_key: str) -> int:
        """Drop every window for the actor under the policy."""
        removed = 0
        for key in self.store.keys(f"rate_limit:{policy_name}:{actor_key}:"):
            if self.store.delete(key):
                removed += 1
        return removed
