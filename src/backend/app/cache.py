import os, json, time
import fnmatch
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Any, Callable, Dict, Iterable, List, Set, Tuple

import redis

from .metrics_counters import CACHE_HIT, CACHE_MISS, CACHE_STALE

logger = logging.getLogger(__name__)

# Memory fallback never holds an entry longer than this, whatever the caller asks
MEMORY_TTL_CAP = 120

_mem: dict[str, dict[str, Any]] = {}
_client_singleton = None

# SWR entries when Redis is not configured: {data, timestamp, exp}
_swr_mem: Dict[str, Dict[str, Any]] = {}
_inflight: Set[str] = set()
_inflight_lock = threading.Lock()
_now = time.time


def _client():
    global _client_singleton
    if _client_singleton is not None:
        return _client_singleton
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    try:
        _client_singleton = redis.Redis.from_url(url, decode_responses=True)
    except Exception as exc:
        logger.warning("cache_redis_init_failed", extra={"error": str(exc)[:200]})
        _client_singleton = None
    return _client_singleton


def generate_cache_key(prefix: str, *parts: Any) -> str:
    return ":".join([prefix] + [str(p) for p in parts])


def is_cache_available() -> bool:
    return _client() is not None


def cache_get(key: str) -> Optional[Any]:
    c = _client()
    if c:
        try:
            v = c.get(key)
            return json.loads(v) if v else None
        except Exception as exc:
            logger.warning("cache_get_failed", extra={"key": key, "error": str(exc)[:200]})
    v = _mem.get(key)
    if v and v.get("exp", 0) > time.time():
        return v.get("val")
    if v:
        _mem.pop(key, None)
    return None


def cache_set(key: str, val: Any, ttl: int = 60) -> None:
    c = _client()
    s = json.dumps(val)
    if c:
        try:
            c.setex(key, ttl, s)
            return
        except Exception as exc:
            logger.warning("cache_set_failed", extra={"key": key, "error": str(exc)[:200]})
    _mem[key] = {"val": val, "exp": time.time() + min(ttl, MEMORY_TTL_CAP)}


def cache_del(key: str) -> None:
    c = _client()
    if c:
        try:
            c.delete(key)
        except Exception as exc:
            logger.warning("cache_del_failed", extra={"key": key, "error": str(exc)[:200]})
    _mem.pop(key, None)
    _swr_mem.pop(key, None)


def cache_del_pattern(pattern: str) -> int:
    """Delete every key matching a glob pattern. Returns the number removed."""
    deleted = 0
    c = _client()
    if c:
        try:
            keys = list(c.scan_iter(match=pattern, count=100))
            if keys:
                deleted += int(c.delete(*keys) or 0)
        except Exception as exc:
            logger.warning("cache_del_pattern_failed", extra={"pattern": pattern, "error": str(exc)[:200]})
    for k in [k for k in list(_mem.keys()) if fnmatch.fnmatchcase(k, pattern)]:
        _mem.pop(k, None)
        deleted += 1
    for k in [k for k in list(_swr_mem.keys()) if fnmatch.fnmatchcase(k, pattern)]:
        _swr_mem.pop(k, None)
        deleted += 1
    return deleted


def batch_set_cache(entries: Iterable[Tuple[str, Any, int]]) -> None:
    """Set many (key, value, ttl) entries in one Redis round trip."""
    entries = list(entries)
    c = _client()
    if c:
        try:
            pipe = c.pipeline()
            for key, val, ttl in entries:
                pipe.setex(key, ttl, json.dumps(val))
            pipe.execute()
            return
        except Exception as exc:
            logger.warning("cache_batch_set_failed", extra={"count": len(entries), "error": str(exc)[:200]})
    for key, val, ttl in entries:
        _mem[key] = {"val": val, "exp": time.time() + min(ttl, MEMORY_TTL_CAP)}


def get_cache_stats(pattern: str = "*") -> Dict[str, Any]:
    total = 0
    c = _client()
    if c:
        try:
            total = sum(1 for _ in c.scan_iter(match=pattern, count=100))
        except Exception as exc:
            logger.warning("cache_stats_failed", extra={"error": str(exc)[:200]})
    else:
        now = time.time()
        total = sum(1 for k, v in list(_mem.items()) if v.get("exp", 0) > now and fnmatch.fnmatchcase(k, pattern))
    return {"total_keys": total, "pattern": pattern}


def cache_incr(key: str, by: int = 1, expire_seconds: int = 86400) -> int:
    """Increment an integer counter with TTL. Returns the new value."""
    c = _client()
    if c:
        try:
            v = c.incrby(key, by)
            # Ensure TTL set at least once
            if c.ttl(key) < 0:
                c.expire(key, expire_seconds)
            return int(v)
        except Exception as exc:
            logger.warning("cache_incr_failed", extra={"key": key, "error": str(exc)[:200]})
    cur = 0
    now = time.time()
    entry = _mem.get(key)
    if entry and entry.get("exp", 0) > now:
        try:
            cur = int(entry.get("val") or 0)
        except (TypeError, ValueError):
            cur = 0
    cur += by
    # Counters keep their own window; the memory cap only applies to cached payloads
    _mem[key] = {"val": cur, "exp": entry["exp"] if entry and entry.get("exp", 0) > now else now + expire_seconds}
    return cur


def with_cache(key: str, ttl: int, fetch_fn: Callable[[], Any], name: str = "default") -> Any:
    cached = cache_get(key)
    if cached is not None:
        CACHE_HIT.labels(cache=name).inc()
        return cached
    CACHE_MISS.labels(cache=name).inc()
    data = fetch_fn()
    if data is not None:
        cache_set(key, data, ttl)
    return data


# Stale-while-revalidate --------------------------------------------------------
@dataclass
class SWRResult:
    data: Any
    is_stale: bool = False
    revalidating: bool = False


def _meta_key(key: str) -> str:
    return f"{key}:meta"


def _swr_read(key: str) -> Tuple[Optional[Any], Optional[float]]:
    """Cached value and its write time, or ``(None, None)``."""
    c = _client()
    if c:
        cached = cache_get(key)
        if cached is None:
            return None, None
        raw = c.get(_meta_key(key))
        return cached, (float(raw) if raw else None)
    entry = _swr_mem.get(key)
    if not entry:
        return None, None
    if entry["exp"] <= _now():
        _swr_mem.pop(key, None)
        return None, None
    return entry["data"], entry["timestamp"]


def _prune_swr_mem(now: float) -> None:
    for k in [k for k, v in list(_swr_mem.items()) if v["exp"] <= now]:
        _swr_mem.pop(k, None)


def _write_swr(key: str, data: Any, stale_ttl: int) -> None:
    now = _now()
    if _client():
        batch_set_cache([(key, data, stale_ttl), (_meta_key(key), now, stale_ttl)])
        return
    # not subject to MEMORY_TTL_CAP: the entry has to outlive ttl to be served stale
    _prune_swr_mem(now)
    _swr_mem[key] = {"data": data, "timestamp": now, "exp": now + stale_ttl}


def _refresh_in_background(key: str, stale_ttl: int, fetch_fn: Callable[[], Any]) -> bool:
    """Start one refresh for ``key``. False when a refresh is already running."""
    with _inflight_lock:
        if key in _inflight:
            return False
        _inflight.add(key)

    def _run():
        try:
            data = fetch_fn()
            _write_swr(key, data, stale_ttl)
            logger.info("cache_swr_refreshed", extra={"key": key})
        except Exception as exc:
            # the stale entry stays in place until it ages out
            logger.warning("cache_swr_refresh_failed", extra={"key": key, "error": str(exc)[:200]})
        finally:
            with _inflight_lock:
                _inflight.discard(key)

    t = threading.Thread(target=_run, daemon=True)
    t.start()
    return True


def with_cache_swr(key: str, ttl: int, stale_ttl: int, fetch_fn: Callable[[], Any], name: str = "swr") -> SWRResult:
    """Serve fresh data, serve stale data while refreshing it, or fetch.

    ``age < ttl`` is fresh. ``ttl <= age < stale_ttl`` returns the cached value
    immediately and kicks off a single background refresh. Anything older, or
    missing, is fetched synchronously.
    """
    try:
        cached, ts = _swr_read(key)
    except Exception as exc:
        logger.warning("cache_swr_read_failed", extra={"key": key, "error": str(exc)[:200]})
        return SWRResult(data=fetch_fn())

    age = (_now() - ts) if ts is not None else float("inf")
    if cached is not None and age < ttl:
        CACHE_HIT.labels(cache=name).inc()
        return SWRResult(data=cached)
    if cached is not None and age < stale_ttl:
        CACHE_STALE.labels(cache=name).inc()
        started = _refresh_in_background(key, stale_ttl, fetch_fn)
        logger.info("cache_swr_stale", extra={"key": key, "age": int(age), "refresh_started": started})
        return SWRResult(data=cached, is_stale=True, revalidating=True)

    CACHE_MISS.labels(cache=name).inc()
    data = fetch_fn()
    try:
        _write_swr(key, data, stale_ttl)
    except Exception as exc:
        logger.warning("cache_swr_write_failed", extra={"key": key, "error": str(exc)[:200]})
    return SWRResult(data=data)


def clear_swr_entry(key: str) -> None:
    cache_del(key)
    cache_del(_meta_key(key))


def invalidate_user_cache(user_id: str) -> int:
    deleted = cache_del_pattern(f"meta:*:*{user_id}*")
    deleted += cache_del_pattern(f"dashboard:stats:{user_id}*")
    logger.info("cache_user_invalidated", extra={"user_id": user_id, "deleted": deleted})
    return deleted


# Process-lifetime caches -------------------------------------------------------
class ProcessCache:
    """Named in-process map of ``{data, timestamp}`` entries, second level behind Redis."""

    _registry: Dict[str, "ProcessCache"] = {}

    def __init__(self, name: str, max_age_seconds: int):
        self.name = name
        self.max_age_seconds = max_age_seconds
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        ProcessCache._registry[name] = self

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            if time.time() - entry["timestamp"] >= self.max_age_seconds:
                self._entries.pop(key, None)
                return None
            return entry["data"]

    def set(self, key: str, data: Any) -> None:
        with self._lock:
            self._entries[key] = {"data": data, "timestamp": time.time()}

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for k in keys:
                self._entries.pop(k, None)
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    @classmethod
    def all(cls) -> List["ProcessCache"]:
        return list(cls._registry.values())


TEAM_CONFIG_CACHE = ProcessCache("team_config", 7200)
TEAM_AD_ACCOUNTS_CACHE = ProcessCache("team_ad_accounts", 3600)
TEAM_PAGES_CACHE = ProcessCache("team_pages", 3600)


def invalidate_team_caches_for_user(user_id: str) -> int:
    """Drop team config, ad-account and page caches for every mode of ``user_id``."""
    deleted = 0
    cache_del(f"team:config:{user_id}")
    TEAM_CONFIG_CACHE.delete(user_id)
    deleted += cache_del_pattern(f"team:ad-accounts:{user_id}:*")
    deleted += cache_del_pattern(f"team:pages:{user_id}:*")
    deleted += TEAM_AD_ACCOUNTS_CACHE.delete_prefix(f"{user_id}:")
    deleted += TEAM_PAGES_CACHE.delete_prefix(f"{user_id}:")
    logger.info("team_cache_invalidated", extra={"user_id": user_id, "deleted": deleted})
    return deleted
