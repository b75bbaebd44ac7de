from __future__ import annotations

import pytest

from hoops_tracker.cache import (
    MemoryCache,
    coach_stats_key,
    keys_to_invalidate,
    leaderboard_key,
    player_progress_key,
    user_key,
    workout_key,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_invalidation_table():
    assert keys_to_invalidate("workout") == {"workout:", "coach:stats:", "player:progress:"}
    assert keys_to_invalidate("progress") == {"player:progress:", "leaderboard:", "coach:stats:"}
    assert keys_to_invalidate("user") == {"user:", "leaderboard:", "coach:stats:"}
    assert keys_to_invalidate("leaderboard") == {"leaderboard:"}


def test_unknown_change_kind_raises():
    with pytest.raises(ValueError):
        keys_to_invalidate("weather")


def test_key_builders():
    assert leaderboard_key() == "leaderboard:global"
    assert leaderboard_key("team", "t9") == "leaderboard:team:t9"
    assert user_key("u1") == "user:u1"
    assert workout_key("w1") == "workout:w1"
    assert coach_stats_key("c1") == "coach:stats:c1"
    assert player_progress_key("p1") == "player:progress:p1"


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = MemoryCache(default_ttl=60, clock=clock)
    cache.set("user:1", {"name": "Ana"})
    cache.set("user:2", "short", ttl=5)
    clock.now += 10
    assert cache.get("user:1") == {"name": "Ana"}
    assert cache.get("user:2") is None
    clock.now += 60
    assert cache.get("user:1") is None
    assert cache.stats() == {"keys": 0, "hits": 1, "misses": 2}


def test_progress_change_evicts_matching_families_only():
    cache = MemoryCache()
    for key in (
        leaderboard_key(),
        player_progress_key("p1"),
        coach_stats_key("c1"),
        user_key("p1"),
        workout_key("w1"),
    ):
        cache.set(key, key)
    removed = cache.delete_by_prefix(keys_to_invalidate("progress"))
    assert removed == 3
    assert cache.keys() == ["user:p1", "workout:w1"]


def test_delete_and_flush():
    cache = MemoryCache()
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.delete("a") == 1
    assert cache.delete("a") == 0
    assert cache.has("b")
    cache.flush()
    assert cache.keys() == []
    assert cache.delete_by_prefix([]) == 0


def test_expired_entries_are_swept_on_write():
    clock = FakeClock()
    cache = MemoryCache(clock=clock, check_period=120)
    for index in range(1000):
        cache.set(leaderboard_key(f"page{index}"), index, ttl=1)
    clock.now += 130
    cache.set("user:fresh", "value")
    assert cache.stats()["keys"] == 1


def test_size_cap_evicts_entries_closest_to_expiry():
    clock = FakeClock()
    cache = MemoryCache(clock=clock, max_entries=2)
    cache.set("a", 1, ttl=10)
    cache.set("b", 2, ttl=300)
    cache.set("c", 3, ttl=60)
    assert cache.keys() == ["b", "c"]


def test_max_entries_must_be_positive():
    with pytest.raises(ValueError):
        MemoryCache(max_entries=0)
