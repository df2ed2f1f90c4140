"""Short-TTL memo of non-streaming chat responses.

Best-effort accelerator: a miss is always a valid outcome, so backend errors
are logged and treated as misses.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from typing import Protocol

from config import settings

logger = logging.getLogger(__name__)

_DEFAULT_TTL = 30


def response_cache_key(
    user_id: int,
    model_id: str,
    messages: list[dict],
    flags: dict,
) -> str:
    payload = json.dumps(
        {"messages": messages, "flags": flags},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    digest = hashlib.sha256(payload.encode()).hexdigest()[:32]
    return f"chat:{user_id}:{model_id}:{digest}"


class ResponseCache(Protocol):
    def get(self, key: str) -> dict | None: ...

    def set(self, key: str, value: dict, ttl: int | None = None) -> None: ...

    def purge_expired(self) -> int: ...


class InMemoryResponseCache:
    def __init__(self, ttl: int = _DEFAULT_TTL, max_entries: int = 1000):
        self._cache: dict[str, tuple[float, dict]] = {}
        self._lock = threading.Lock()
        self._ttl = ttl
        self._max_entries = max_entries

    def get(self, key: str) -> dict | None:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if time.monotonic() >= expires_at:
                del self._cache[key]
                return None
            return value

    def set(self, key: str, value: dict, ttl: int | None = None) -> None:
        ttl = self._ttl if ttl is None else ttl
        with self._lock:
            if len(self._cache) >= self._max_entries and key not in self._cache:
                # Evict the entry closest to expiry
                oldest = min(self._cache, key=lambda k: self._cache[k][0])
                del self._cache[oldest]
            self._cache[key] = (time.monotonic() + ttl, value)

    def purge_expired(self) -> int:
        now = time.monotonic()
        with self._lock:
            expired = [k for k, (expires_at, _) in self._cache.items() if now >= expires_at]
            for k in expired:
                del self._cache[k]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


class RedisResponseCache:
    """Shared cache for multi-instance deployments; Redis handles expiry."""

    def __init__(self, url: str, ttl: int = _DEFAULT_TTL):
        import redis as redis_lib

        self._redis = redis_lib.from_url(url, decode_responses=True)
        self._ttl = ttl

    def get(self, key: str) -> dict | None:
        try:
            raw = self._redis.get(key)
        except Exception:
            logger.warning("Response cache read failed for %s", key, exc_info=True)
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None

    def set(self, key: str, value: dict, ttl: int | None = None) -> None:
        try:
            self._redis.set(key, json.dumps(value), ex=self._ttl if ttl is None else ttl)
        except Exception:
            logger.warning("Response cache write failed for %s", key, exc_info=True)

    def purge_expired(self) -> int:
        return 0


class NullResponseCache:
    def get(self, key: str) -> dict | None:
        return None

    def set(self, key: str, value: dict, ttl: int | None = None) -> None:
        return None

    def purge_expired(self) -> int:
        return 0


def create_response_cache(backend: str | None = None) -> ResponseCache:
    backend = (backend or settings.RESPONSE_CACHE_BACKEND).lower()
    ttl = settings.RESPONSE_CACHE_TTL_SECONDS
    if backend == "redis":
        return RedisResponseCache(settings.REDIS_URL, ttl=ttl)
    if backend == "none":
        return NullResponseCache()
    return InMemoryResponseCache(ttl=ttl)
