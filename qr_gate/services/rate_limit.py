import time, threading
import redis
from flask import current_app

_r = None
_lock = threading.Lock()


class RateLimitExceeded(Exception):
    pass


class _MemStore:
    def __init__(self):
        self._data = {}
        self._exp = {}
        self._lock = threading.Lock()

    def _cleanup(self):
        now = time.time()
        expired = [k for k, ts in self._exp.items() if ts <= now]
        for k in expired:
            self._data.pop(k, None)
            self._exp.pop(k, None)

    def incr(self, key):
        with self._lock:
            self._cleanup()
            v = int(self._data.get(key, '0')) + 1
            self._data[key] = str(v)
            return v

    def expire(self, key, ttl):
        with self._lock:
            self._cleanup()
            self._exp[key] = time.time() + ttl


def r():
    global _r
    if _r is not None:
        return _r
    with _lock:
        if _r is not None:
            return _r
        url = current_app.config.get('REDIS_URL')
        if current_app.config.get('USE_REDIS') and url:
            try:
                client = redis.from_url(url, decode_responses=True)
                # Test connection once; fallback to memory on failure
                client.ping()
                _r = client
                return _r
            except redis.RedisError:
                current_app.logger.warning('redis unavailable at %s, rate limits kept in memory', url)
        _r = _MemStore()
        return _r


def check_rate_ip(ip: str, limit: int, window: int = 60):
    """Count one hit for `ip` in the current window; raise once `limit` is passed."""
    if limit <= 0:
        return
    k = f"rl:verify:{ip}:{int(time.time()//window)}"
    v = r().incr(k)
    r().expire(k, window)
    if v > limit:
        raise RateLimitExceeded(f'more than {limit} requests in {window}s')
