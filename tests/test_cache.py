import threading
import time

from src.backend.app import cache
from src.backend.app.cache import (
    ProcessCache,
    TEAM_AD_ACCOUNTS_CACHE,
    TEAM_CONFIG_CACHE,
    TEAM_PAGES_CACHE,
    batch_set_cache,
    cache_del_pattern,
    cache_get,
    cache_incr,
    cache_set,
    invalidate_team_caches_for_user,
    invalidate_user_cache,
    with_cache,
    with_cache_swr,
)


def _wait_for_refresh(key: str, timeout: float = 2.0) -> None:
    deadline = time.time() + timeout
    while key in cache._inflight and time.time() < deadline:
        time.sleep(0.01)


def test_memory_fallback_caps_ttl():
    cache_set("k", {"a": 1}, ttl=3600)
    assert cache_get("k") == {"a": 1}
    assert cache._mem["k"]["exp"] <= time.time() + cache.MEMORY_TTL_CAP


def test_expired_memory_entry_is_dropped():
    cache._mem["old"] = {"val": 1, "exp": time.time() - 1}
    assert cache_get("old") is None
    assert "old" not in cache._mem


def test_pattern_delete_counts_matches():
    cache_set("meta:a:u1", 1)
    cache_set("meta:b:u1", 2)
    cache_set("team:config:u1", 3)
    assert cache_del_pattern("meta:*") == 2
    assert cache_get("team:config:u1") == 3


def test_with_cache_fetches_once_and_skips_none():
    calls = []

    def fetch():
        calls.append(1)
        return {"v": len(calls)}

    assert with_cache("wc", 60, fetch) == {"v": 1}
    assert with_cache("wc", 60, fetch) == {"v": 1}
    assert len(calls) == 1

    assert with_cache("none", 60, lambda: None) is None
    assert cache_get("none") is None


def test_incr_keeps_counter_window():
    assert cache_incr("rl:x", 1, expire_seconds=65) == 1
    assert cache_incr("rl:x", 2, expire_seconds=65) == 3


def test_swr_fresh_hit_does_not_refetch():
    calls = []

    def fetch():
        calls.append(1)
        return [1, 2]

    first = with_cache_swr("swr:fresh", ttl=60, stale_ttl=3600, fetch_fn=fetch)
    second = with_cache_swr("swr:fresh", ttl=60, stale_ttl=3600, fetch_fn=fetch)
    assert first.data == [1, 2] and not first.is_stale
    assert second.data == [1, 2] and not second.is_stale
    assert len(calls) == 1


def test_swr_stale_serves_old_value_and_refreshes_once(clock):
    key = "swr:stale"
    with_cache_swr(key, ttl=10, stale_ttl=3600, fetch_fn=lambda: "old")
    clock.advance(100)

    release = threading.Event()
    calls = []

    def slow_fetch():
        calls.append(1)
        release.wait(2)
        return "new"

    a = with_cache_swr(key, ttl=10, stale_ttl=3600, fetch_fn=slow_fetch)
    b = with_cache_swr(key, ttl=10, stale_ttl=3600, fetch_fn=slow_fetch)
    assert a.data == "old" and a.is_stale and a.revalidating
    assert b.data == "old" and b.is_stale
    release.set()
    _wait_for_refresh(key)
    assert len(calls) == 1
    assert cache._swr_mem[key]["data"] == "new"


def test_swr_failed_refresh_keeps_stale_entry(clock):
    key = "swr:fail"
    with_cache_swr(key, ttl=10, stale_ttl=3600, fetch_fn=lambda: "old")
    clock.advance(100)

    def boom():
        raise RuntimeError("graph down")

    result = with_cache_swr(key, ttl=10, stale_ttl=3600, fetch_fn=boom)
    assert result.data == "old"
    _wait_for_refresh(key)
    assert cache._swr_mem[key]["data"] == "old"


def test_swr_past_stale_window_fetches_synchronously(clock):
    key = "swr:expired"
    with_cache_swr(key, ttl=10, stale_ttl=3600, fetch_fn=lambda: "old")
    clock.advance(4000)
    result = with_cache_swr(key, ttl=10, stale_ttl=3600, fetch_fn=lambda: "new")
    assert result.data == "new"
    assert not result.is_stale


def test_swr_read_error_falls_back_to_fetch(monkeypatch):
    def broken(key):
        raise ConnectionError("redis gone")

    monkeypatch.setattr(cache, "_swr_read", broken)
    result = with_cache_swr("swr:broken", ttl=10, stale_ttl=3600, fetch_fn=lambda: 42)
    assert result.data == 42


def test_swr_memory_entry_outlives_memory_cap(clock):
    key = "swr:lists"
    fetches = []

    def fetch():
        fetches.append(1)
        return {"n": len(fetches)}

    with_cache_swr(key, ttl=600, stale_ttl=3600, fetch_fn=fetch)
    clock.advance(200)
    fresh = with_cache_swr(key, ttl=600, stale_ttl=3600, fetch_fn=fetch)
    assert fresh.data == {"n": 1} and not fresh.is_stale
    assert len(fetches) == 1

    clock.advance(800)
    stale = with_cache_swr(key, ttl=600, stale_ttl=3600, fetch_fn=fetch)
    assert stale.data == {"n": 1} and stale.is_stale
    _wait_for_refresh(key)
    assert len(fetches) == 2
    assert cache._swr_mem[key]["data"] == {"n": 2}


def test_swr_memory_map_drops_expired_entries(clock):
    with_cache_swr("swr:a", ttl=10, stale_ttl=100, fetch_fn=lambda: "a")
    with_cache_swr("swr:b", ttl=10, stale_ttl=1000, fetch_fn=lambda: "b")
    clock.advance(500)
    with_cache_swr("swr:c", ttl=10, stale_ttl=100, fetch_fn=lambda: "c")
    assert "swr:a" not in cache._swr_mem
    assert set(cache._swr_mem) == {"swr:b", "swr:c"}

    clock.advance(2000)
    assert cache._swr_read("swr:b") == (None, None)
    assert "swr:b" not in cache._swr_mem


def test_swr_entries_are_removed_by_pattern_delete():
    with_cache_swr("meta:campaigns:v3:u1:act_1", ttl=10, stale_ttl=3600, fetch_fn=lambda: [1])
    assert invalidate_user_cache("u1") == 1
    assert cache._swr_mem == {}


class _FakePipeline:
    def __init__(self, store):
        self.store = store
        self.ops = []

    def setex(self, key, ttl, value):
        self.ops.append((key, ttl, value))

    def execute(self):
        for key, ttl, value in self.ops:
            self.store[key] = (ttl, value)
        self.ops = []


class _FakeRedis:
    def __init__(self):
        self.store = {}
        self.pipelines = 0

    def get(self, key):
        entry = self.store.get(key)
        return entry[1] if entry else None

    def pipeline(self):
        self.pipelines += 1
        return _FakePipeline(self.store)


def test_batch_set_cache_uses_one_pipeline(monkeypatch):
    fake = _FakeRedis()
    monkeypatch.setattr(cache, "_client_singleton", fake)
    batch_set_cache([("a", {"x": 1}, 60), ("b", [2], 120)])
    assert fake.pipelines == 1
    assert fake.store == {"a": (60, '{"x": 1}'), "b": (120, "[2]")}


def test_batch_set_cache_memory_fallback_is_capped():
    batch_set_cache([("a", 1, 3600), ("b", 2, 30)])
    assert cache_get("a") == 1 and cache_get("b") == 2
    assert cache._mem["a"]["exp"] <= time.time() + cache.MEMORY_TTL_CAP


def test_swr_with_redis_writes_value_and_timestamp_together(monkeypatch, clock):
    fake = _FakeRedis()
    monkeypatch.setattr(cache, "_client_singleton", fake)
    with_cache_swr("swr:r", ttl=60, stale_ttl=3600, fetch_fn=lambda: {"v": 1})
    assert fake.pipelines == 1
    assert fake.store["swr:r"][0] == 3600
    assert fake.store["swr:r:meta"][0] == 3600

    clock.advance(120)
    stale = with_cache_swr("swr:r", ttl=60, stale_ttl=3600, fetch_fn=lambda: {"v": 2})
    assert stale.data == {"v": 1} and stale.is_stale
    _wait_for_refresh("swr:r")
    assert cache_get("swr:r") == {"v": 2}
    assert cache._swr_mem == {}


def test_team_config_cache_lives_two_hours():
    assert TEAM_CONFIG_CACHE.max_age_seconds == 7200
    assert TEAM_AD_ACCOUNTS_CACHE.max_age_seconds == 3600
    assert TEAM_PAGES_CACHE.max_age_seconds == 3600


def test_process_cache_expiry_and_prefix_delete():
    pc = ProcessCache("test_scratch", 3600)
    pc.set("u1:a", 1)
    pc.set("u1:b", 2)
    pc.set("u10:a", 3)
    assert pc.get("u1:a") == 1
    assert pc.delete_prefix("u1:") == 2
    assert pc.get("u10:a") == 3

    short = ProcessCache("test_short", 0)
    short.set("k", 1)
    assert short.get("k") is None


def test_team_invalidation_drops_every_mode_for_one_user():
    cache_set("team:config:u1", {"accounts": []})
    cache_set("team:ad-accounts:u1:default", {"accounts": []})
    cache_set("team:pages:u1:business", {"pages": []})
    cache_set("team:pages:u10:default", {"pages": []})
    TEAM_CONFIG_CACHE.set("u1", {})
    TEAM_AD_ACCOUNTS_CACHE.set("u1:default", {})
    TEAM_PAGES_CACHE.set("u1:lite", {})
    TEAM_PAGES_CACHE.set("u10:default", {})

    assert invalidate_team_caches_for_user("u1") == 4
    assert cache_get("team:config:u1") is None
    assert cache_get("team:ad-accounts:u1:default") is None
    assert cache_get("team:pages:u1:business") is None
    assert cache_get("team:pages:u10:default") == {"pages": []}
    assert TEAM_CONFIG_CACHE.get("u1") is None
    assert TEAM_PAGES_CACHE.get("u1:lite") is None
    assert TEAM_PAGES_CACHE.get("u10:default") == {}


def test_user_invalidation_drops_listing_entries():
    cache_set("meta:campaigns:v3:u1:act_1:all:full:all", {"campaigns": []})
    cache_set("dashboard:stats:u1", {})
    cache_set("meta:campaigns:v3:u2:act_1:all:full:all", {"campaigns": []})
    assert invalidate_user_cache("u1") == 2
    assert cache_get("meta:campaigns:v3:u2:act_1:all:full:all") == {"campaigns": []}
