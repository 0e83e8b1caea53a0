"""Counter store backends shared by rate limiting and abuse counters."""

from .counter_store import CounterStore, MemoryCounterStore, RedisCounterStore, build_counter_store

__all__ = ["CounterStore", "MemoryCounterStore", "RedisCounterStore", "build_counter_store"]
