"""
Cache Service - key/value store with TTL

Redis in production, an in-process dict for tests and local runs.
The check-in code store sits on top of either backend.
"""
import json
import logging
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import redis

from popup_engine.config import settings
from popup_engine.schemas.verification import ActiveCode

logger = logging.getLogger(__name__)


class Cache:
    """Minimal cache contract used by the engine"""

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def ping(self) -> bool:
        return True


class RedisCache(Cache):
    """
    JSON values in Redis under a common key prefix.

    Connection problems are logged and treated as cache misses; the cache
    is never the source of truth.
    """

    def __init__(self, url: Optional[str] = None, prefix: Optional[str] = None):
        self._url = url or settings.REDIS_URL
        self._prefix = prefix if prefix is not None else settings.CACHE_KEY_PREFIX
        self._redis_client: Optional[redis.Redis] = None

    def _get_redis(self) -> Optional[redis.Redis]:
        if self._redis_client is None:
            try:
                self._redis_client = redis.from_url(self._url, decode_responses=True)
                self._redis_client.ping()
            except Exception as e:
                logger.warning(f"Redis unavailable for cache: {e}")
                self._redis_client = None
        return self._redis_client

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}" if self._prefix else key

    def get(self, key: str) -> Optional[Any]:
        try:
            r = self._get_redis()
            if r:
                cached = r.get(self._key(key))
                if cached is not None:
                    return json.loads(cached)
        except Exception as e:
            logger.warning(f"Cache read error: {e}")
        return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            r = self._get_redis()
            if r:
                payload = json.dumps(value, default=str)
                if ttl:
                    r.setex(self._key(key), ttl, payload)
                else:
                    r.set(self._key(key), payload)
        except Exception as e:
            logger.warning(f"Cache write error: {e}")

    def delete(self, key: str) -> None:
        try:
            r = self._get_redis()
            if r:
                r.delete(self._key(key))
        except Exception as e:
            logger.warning(f"Cache delete error: {e}")

    def ping(self) -> bool:
        try:
            r = self._get_redis()
            return bool(r and r.ping())
        except Exception:
            return False


class MemoryCache(Cache):
    """Thread-safe in-process cache; expiry is checked on read"""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires = entry
            if expires is not None and self._clock() >= expires:
                del self._data[key]
                return None
            # Copy through JSON so callers never share mutable state
            return json.loads(json.dumps(value, default=str))

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        expires = self._clock() + ttl if ttl else None
        with self._lock:
            self._data[key] = (json.loads(json.dumps(value, default=str)), expires)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class CodeStore:
    """
    Read side of the rotating check-in codes.

    A separate scheduler publishes the codes (current and, during a
    rotation, the previous one). `publish` exists for that scheduler and
    for tests; the engine itself only reads.
    """

    def __init__(self, cache: Cache):
        self.cache = cache

    @staticmethod
    def key(popup_id: str) -> str:
        return f"checkin:codes:{popup_id}"

    def active_codes(self, popup_id: str) -> List[ActiveCode]:
        raw = self.cache.get(self.key(popup_id)) or []
        codes = []
        for entry in raw:
            try:
                codes.append(ActiveCode.model_validate(entry))
            except ValueError as e:
                logger.warning(f"Dropping malformed code entry for popup {popup_id}: {e}")
        return codes

    def publish(
        self,
        popup_id: str,
        codes: List[ActiveCode],
        ttl: Optional[int] = None
    ) -> None:
        self.cache.set(
            self.key(popup_id),
            [c.model_dump(mode="json") for c in codes],
            ttl=ttl
        )


# Default production cache
cache = RedisCache()
code_store = CodeStore(cache)
