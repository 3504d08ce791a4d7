"""In-memory TTL store tests."""

import threading

import pytest

from quizrank.cache.memory import MemoryStore


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class TestTTL:
    def test_round_trip_before_expiry(self, clock):
        store = MemoryStore(10, clock)
        store.set("k", {"a": 1}, ttl=60)
        clock.advance(59)
        assert store.get("k") == {"a": 1}

    def test_expired_entry_is_a_miss(self, clock):
        store = MemoryStore(10, clock)
        store.set("k", "v", ttl=60)
        clock.advance(60)
        assert store.get("k") is None
        assert "k" not in store
        assert len(store) == 0

    def test_non_positive_ttl_rejected(self, clock):
        store = MemoryStore(10, clock)
        with pytest.raises(ValueError):
            store.set("k", "v", ttl=0)

    def test_purge_expired(self, clock):
        store = MemoryStore(10, clock)
        store.set("short", 1, ttl=5)
        store.set("long", 2, ttl=50)
        clock.advance(10)
        assert store.purge_expired() == 1
        assert store.keys() == ["long"]


class TestEviction:
    def test_evicts_exactly_the_oldest(self, clock):
        store = MemoryStore(3, clock)
        for key in ("a", "b", "c"):
            store.set(key, key, ttl=60)
        evicted = store.set("d", "d", ttl=60)
        assert evicted == "a"
        assert store.keys() == ["b", "c", "d"]
        assert store.evictions == 1

    def test_reads_do_not_protect_entries(self, clock):
        store = MemoryStore(2, clock)
        store.set("a", 1, ttl=60)
        store.set("b", 2, ttl=60)
        assert store.get("a") == 1
        store.set("c", 3, ttl=60)
        assert store.get("a") is None
        assert store.get("b") == 2

    def test_overwrite_counts_as_new_insertion(self, clock):
        store = MemoryStore(2, clock)
        store.set("a", 1, ttl=60)
        store.set("b", 2, ttl=60)
        assert store.set("a", 10, ttl=60) is None
        store.set("c", 3, ttl=60)
        assert store.keys() == ["a", "c"]

    def test_never_exceeds_capacity(self, clock):
        store = MemoryStore(5, clock)
        for i in range(50):
            store.set(f"k{i}", i, ttl=60)
            assert len(store) <= 5

    def test_concurrent_writers(self):
        store = MemoryStore(100)

        def writer(prefix: str) -> None:
            for i in range(500):
                store.set(f"{prefix}:{i}", i, ttl=60)

        threads = [threading.Thread(target=writer, args=(f"t{n}",)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(store) == 100
        assert store.evictions == 4 * 500 - 100


class TestPatterns:
    def test_delete_pattern(self, clock):
        store = MemoryStore(10, clock)
        store.set("leaderboard:daily:all:10:0", 1, ttl=60)
        store.set("leaderboard:daily:7:10:0", 2, ttl=60)
        store.set("user:1:stats:all", 3, ttl=60)
        assert store.delete_pattern("leaderboard:*") == 2
        assert store.keys() == ["user:1:stats:all"]

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            MemoryStore(0)
