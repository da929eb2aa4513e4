"""
tests/test_counter_cache.py -- Unit tests for CounterCache and AttemptTracker.

The cache clock is a FrozenClock (see conftest.py), so expiry is exercised by
moving time forward rather than sleeping.
"""

from __future__ import annotations

import threading

from auth.attempts import ATTEMPT_RESET_MINUTES, AttemptTracker
from cache.store import CounterCache


def test_missing_key_reads_as_none(counter_cache: CounterCache) -> None:
    assert counter_cache.get("nope") is None


def test_put_then_get(counter_cache: CounterCache) -> None:
    counter_cache.put("k", 7, ttl=60)
    assert counter_cache.get("k") == 7


def test_entry_expires(counter_cache: CounterCache, clock) -> None:
    counter_cache.put("k", 7, ttl=60)
    clock.advance(seconds=60)
    assert counter_cache.get("k") is None


def test_increment_counts_and_restarts_after_expiry(counter_cache: CounterCache, clock) -> None:
    assert counter_cache.increment("k", ttl=60) == 1
    assert counter_cache.increment("k", ttl=60) == 2
    clock.advance(seconds=61)
    assert counter_cache.increment("k", ttl=60) == 1


def test_increment_extends_expiry(counter_cache: CounterCache, clock) -> None:
    counter_cache.increment("k", ttl=60)
    clock.advance(seconds=45)
    counter_cache.increment("k", ttl=60)
    clock.advance(seconds=45)
    assert counter_cache.get("k") == 2


def test_forget_and_purge(counter_cache: CounterCache, clock) -> None:
    counter_cache.put("a", 1, ttl=10)
    counter_cache.put("b", 1, ttl=100)
    counter_cache.forget("b")
    assert counter_cache.get("b") is None
    clock.advance(seconds=11)
    assert counter_cache.purge_expired() == 1


def test_concurrent_increments_are_not_lost() -> None:
    cache = CounterCache(":memory:")
    try:

        def hammer() -> None:
            for _ in range(50):
                cache.increment("k", ttl=600)

        threads = [threading.Thread(target=hammer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert cache.get("k") == 200
    finally:
        cache.close()


class TestAttemptTracker:
    def test_unknown_ip_has_zero_attempts(self, attempts: AttemptTracker) -> None:
        assert attempts.get("10.0.0.1") == 0

    def test_counts_per_ip(self, attempts: AttemptTracker) -> None:
        attempts.increment("10.0.0.1")
        attempts.increment("10.0.0.1")
        attempts.increment("10.0.0.2")
        assert attempts.get("10.0.0.1") == 2
        assert attempts.get("10.0.0.2") == 1

    def test_clear_only_touches_one_ip(self, attempts: AttemptTracker) -> None:
        attempts.increment("10.0.0.1")
        attempts.increment("10.0.0.2")
        attempts.clear("10.0.0.1")
        assert attempts.get("10.0.0.1") == 0
        assert attempts.get("10.0.0.2") == 1

    def test_window_rolls_from_last_failure(self, attempts: AttemptTracker, clock) -> None:
        attempts.increment("10.0.0.1")
        clock.advance(minutes=ATTEMPT_RESET_MINUTES - 1)
        attempts.increment("10.0.0.1")
        clock.advance(minutes=ATTEMPT_RESET_MINUTES - 1)
        assert attempts.get("10.0.0.1") == 2
        clock.advance(minutes=1)
        assert attempts.get("10.0.0.1") == 0
