"""Tests for the keyed TTL cache."""

from chatbridge.utils.ttl_cache import KeyedTTLCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_hit_until_expiry():
    clock = FakeClock()
    cache = KeyedTTLCache(clock=clock)
    cache.set("a", 1, ttl_seconds=10)
    assert cache.lookup("a") == (True, 1)
    clock.now = 10
    assert cache.lookup("a") == (False, None)
    assert len(cache) == 0


def test_negative_result_is_a_hit():
    cache = KeyedTTLCache(clock=FakeClock())
    cache.set("missing", None, ttl_seconds=5)
    assert cache.lookup("missing") == (True, None)


def test_invalidate_and_clear():
    cache = KeyedTTLCache(clock=FakeClock())
    cache.set("a", 1, 5)
    cache.set("b", 2, 5)
    cache.invalidate("a")
    assert cache.lookup("a") == (False, None)
    cache.clear()
    assert len(cache) == 0
