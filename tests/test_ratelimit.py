"""Unit tests for auth/ratelimit.py."""

import threading

import pytest
from conftest import FakeClock

from auth.ratelimit import InMemoryRateLimitStore


def test_counts_up_to_limit_then_refuses_without_incrementing():
    store = InMemoryRateLimitStore(window_seconds=60, clock=FakeClock())
    decisions = [store.hit("k", 2) for _ in range(4)]
    assert [d.allowed for d in decisions] == [True, True, False, False]
    assert [d.count for d in decisions] == [1, 2, 2, 2]


def test_window_reopens_after_elapsing():
    clock = FakeClock()
    store = InMemoryRateLimitStore(window_seconds=60, clock=clock)
    first = store.hit("k", 1)
    assert not store.hit("k", 1).allowed

    clock.advance(seconds=30)
    assert store.hit("k", 1).retry_after(clock.now) == 30

    clock.advance(seconds=30)
    fresh = store.hit("k", 1)
    assert fresh.allowed
    assert fresh.reset_at > first.reset_at


def test_keys_are_independent():
    store = InMemoryRateLimitStore(clock=FakeClock())
    assert store.hit("a", 1).allowed
    assert store.hit("b", 1).allowed
    assert not store.hit("a", 1).allowed


def test_reset_clears_window():
    store = InMemoryRateLimitStore(clock=FakeClock())
    store.hit("k", 1)
    store.reset("k")
    store.reset("never-seen")
    assert store.hit("k", 1).allowed


def test_invalid_window():
    with pytest.raises(ValueError):
        InMemoryRateLimitStore(window_seconds=0)


def test_concurrent_hits_never_exceed_limit():
    store = InMemoryRateLimitStore(clock=FakeClock())
    results = []
    lock = threading.Lock()

    def worker():
        for _ in range(50):
            decision = store.hit("shared", 100)
            with lock:
                results.append(decision.allowed)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 100
    assert len(results) == 400
