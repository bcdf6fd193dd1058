from __future__ import annotations

import logging
import threading
from uuid import uuid4

import redis


logger = logging.getLogger(__name__)

# Delete the key only if this holder still owns it.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""

_redis_clients: dict[str, "redis.Redis"] = {}
_clients_lock = threading.Lock()


def _get_redis_client(url: str) -> "redis.Redis":
    with _clients_lock:
        client = _redis_clients.get(url)
        if client is None:
            client = redis.Redis.from_url(url, decode_responses=True)
            _redis_clients[url] = client
        return client


class SingleFlightLock:
    """
    Guard that lets at most one sync pass run at a time.

    The in-process lock covers threads of one process; with a Redis URL a `SET NX PX` key
    also covers other worker processes. The key expires after `ttl_seconds` so a crashed
    holder cannot block synchronization forever.
    """

    def __init__(self, name: str, *, redis_url: str | None = None, ttl_seconds: float = 1800.0):
        self._name = name
        self._key = f"intake:lock:{name}"
        self._ttl_ms = max(1, int(ttl_seconds * 1000))
        self._local = threading.Lock()
        self._redis_url = redis_url
        self._token: str | None = None

    def acquire(self) -> bool:
        if not self._local.acquire(blocking=False):
            return False
        if self._redis_url is None:
            return True
        token = str(uuid4())
        try:
            acquired = _get_redis_client(self._redis_url).set(self._key, token, nx=True, px=self._ttl_ms)
        except Exception:
            self._local.release()
            raise
        if not acquired:
            self._local.release()
            return False
        self._token = token
        return True

    def release(self) -> None:
        try:
            if self._redis_url is not None and self._token is not None:
                try:
                    _get_redis_client(self._redis_url).eval(_RELEASE_SCRIPT, 1, self._key, self._token)
                except Exception:  # noqa: BLE001
                    logger.warning("Failed to release Redis lock %s; it expires on its own.", self._key, exc_info=True)
                finally:
                    self._token = None
        finally:
            self._local.release()
