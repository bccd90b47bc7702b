import os, json, time
from typing import Optional, Any

import redis

KEY_PREFIX = "hw:"

_mem: dict[str, dict[str, Any]] = {}
_client_singleton = None


def _client():
    global _client_singleton
    if _client_singleton is not None:
        return _client_singleton
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    try:
        _client_singleton = redis.Redis.from_url(url, decode_responses=True)
    except Exception:
        _client_singleton = None
    return _client_singleton


def _mem_live(key: str) -> Optional[dict]:
    entry = _mem.get(key)
    if entry and entry.get("exp", 0) > time.time():
        return entry
    _mem.pop(key, None)
    return None


def cache_get(key: str) -> Optional[Any]:
    key = KEY_PREFIX + key
    c = _client()
    if c:
        try:
            v = c.get(key)
            return json.loads(v) if v else None
        except Exception:
            pass
    entry = _mem_live(key)
    return entry.get("val") if entry else None


def cache_set(key: str, val: Any, ttl: int = 60) -> None:
    key = KEY_PREFIX + key
    c = _client()
    if c:
        try:
            c.setex(key, ttl, json.dumps(val))
            return
        except Exception:
            pass
    _mem[key] = {"val": val, "exp": time.time() + ttl}


def cache_del(key: str) -> None:
    key = KEY_PREFIX + key
    c = _client()
    if c:
        try:
            c.delete(key)
        except Exception:
            pass
    _mem.pop(key, None)


def cache_incr(key: str, by: int = 1, expire_seconds: int = 86400) -> int:
    """Increment an integer counter with TTL. Returns the new value."""
    full = KEY_PREFIX + key
    c = _client()
    if c:
        try:
            v = c.incrby(full, by)
            if c.ttl(full) < 0:
                c.expire(full, expire_seconds)
            return int(v)
        except Exception:
            pass
    entry = _mem_live(full)
    cur = int(entry.get("val") or 0) if entry else 0
    cur += by
    # keep the original expiry so a window does not slide on every hit
    exp = entry["exp"] if entry else time.time() + expire_seconds
    _mem[full] = {"val": cur, "exp": exp}
    return cur


def cache_clear_memory() -> None:
    _mem.clear()


# Circuit breaker over outbound providers (sms:twilio, sms:telnyx, ai:openai)
def breaker_allow(name: str) -> bool:
    """True while the circuit is closed."""
    return not bool(cache_get(f"cb_open:{name}"))


def breaker_on_result(name: str, ok: bool, fail_threshold: int = 3, cool_seconds: int = 60) -> None:
    if ok:
        cache_del(f"cb_fail:{name}")
        return
    fails = cache_incr(f"cb_fail:{name}", 1, expire_seconds=cool_seconds)
    if fails >= fail_threshold:
        cache_set(f"cb_open:{name}", True, ttl=cool_seconds)
