"""Counter store: atomic increment-and-expire over a shared key space.

Two backends:
    MemoryCounterStore - process-local dict guarded by a lock
    RedisCounterStore  - shared across service instances

Both hold integer values only. Expired keys behave as absent.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

import redis

from ..errors import StoreUnavailable
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)


class CounterStore(ABC):
    """Contract used by the rate limiter, fraud counters and blocklist."""

    @abstractmethod
    def incr(self, key: str, ttl_seconds: int) -> int:
        """
        Atomically increment ``key`` and (re)set its expiry.

        Args:
            key: Counter key
            ttl_seconds: Expiry applied after the increment

        Returns:
            Counter value after the increment
        """

    @abstractmethod
    def get(self, key: str) -> Optional[int]:
        pass

    @abstractmethod
    def set(self, key: str, value: int, ttl_seconds: Optional[int] = None) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    def keys(self, prefix: str) -> List[str]:
        pass

    @abstractmethod
    def purge_expired(self) -> int:
        """Drop expired entries. Returns how many were removed."""

    @abstractmethod
    def ping(self) -> bool:
        pass


class MemoryCounterStore(CounterStore):
    """Lock-guarded in-process store."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._lock = threading.Lock()
        self._data: Dict[str, Tuple[int, Optional[datetime]]] = {}

    def _live(self, key: str, now: datetime) -> Optional[int]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= now:
            del self._data[key]
            return None
        return value

    def _expiry(self, now: datetime, ttl_seconds: Optional[int]) -> Optional[datetime]:
        if ttl_seconds is None:
            return None
        return now + timedelta(seconds=ttl_seconds)

    def incr(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            value = (self._live(key, now) or 0) + 1
            self._data[key] = (value, self._expiry(now, ttl_seconds))
            return value

    def get(self, key: str) -> Optional[int]:
        with self._lock:
            return self._live(key, self._clock())

    def set(self, key: str, value: int, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            now = self._clock()
            self._data[key] = (int(value), self._expiry(now, ttl_seconds))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str) -> List[str]:
        with self._lock:
            now = self._clock()
            return [k for k in list(self._data) if k.startswith(prefix) and self._live(k, now) is not None]

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [
                k for k, (_, expires_at) in self._data.items()
                if expires_at is not None and expires_at <= now
            ]
            for k in expired:
                del self._data[k]
        if expired:
            logger.debug(f"Purged {len(expired)} expired counter entries")
        return len(expired)

    def ping(self) -> bool:
        return True


class RedisCounterStore(CounterStore):
    """Redis-backed store shared by every service instance."""

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        return cls(redis.Redis.from_url(url, decode_responses=True, socket_timeout=2))

    def incr(self, key: str, ttl_seconds: int) -> int:
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, ttl_seconds)
            value, _ = pipe.execute()
            return int(value)
        except redis.exceptions.RedisError as e:
            raise StoreUnavailable(f"counter store incr failed: {e}") from e

    def get(self, key: str) -> Optional[int]:
        try:
            value = self.client.get(key)
        except redis.exceptions.RedisError as e:
            raise StoreUnavailable(f"counter store get failed: {e}") from e
        return int(value) if value is not None else None

    def set(self, key: str, value: int, ttl_seconds: Optional[int] = None) -> None:
        try:
            self.client.set(key, int(value), ex=ttl_seconds)
        except redis.exceptions.RedisError as e:
            raise StoreUnavailable(f"counter store set failed: {e}") from e

    def delete(self, key: str) -> bool:
        try:
            return bool(self.client.delete(key))
        except redis.exceptions.RedisError as e:
            raise StoreUnavailable(f"counter store delete failed: {e}") from e

    def keys(self, prefix: str) -> List[str]:
        try:
            return list(self.client.scan_iter(match=f"{prefix}*"))
        except redis.exceptions.RedisError as e:
            raise StoreUnavailable(f"counter store scan failed: {e}") from e

    def purge_expired(self) -> int:
        # Redis expires keys itself
        return 0

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.exceptions.RedisError:
            return False


def build_counter_store(redis_url: Optional[str], clock: Callable[[], datetime] = utcnow) -> CounterStore:
    """Redis when a URL is configured, otherwise the in-memory store."""
    if redis_url:
        logger.info("Using Redis counter store")
        return RedisCounterStore.from_url(redis_url)
    logger.info("Using in-memory counter store")
    return MemoryCounterStore(clock=clock)
