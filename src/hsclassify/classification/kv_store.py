"""Small key/value store abstraction (get / set / expire).

Used for rate-limit counters at the API boundary. The in-memory store backs
tests and single-process deployments; the Redis store is used when
``HSC_REDIS_URL`` is configured.
"""

from __future__ import annotations

import os
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis


class KeyValueStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def expire(self, key: str, ttl: int) -> None:
        raise NotImplementedError

    def incr(self, key: str, ttl: Optional[int] = None) -> int:
        """Increment an integer counter, setting *ttl* when the key is new."""
        current = int(self.get(key) or 0) + 1
        self.set(key, str(current))
        if current == 1 and ttl:
            self.expire(key, ttl)
        return current


class InMemoryKeyValueStore(KeyValueStore):
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        item = self._data.get(key)
        if item is None:
            return None
        _, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return item

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._live(key)
            return item[0] if item else None

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        with self._lock:
            if ttl:
                expires_at: Optional[float] = self._clock() + ttl
            else:
                existing = self._live(key)
                expires_at = existing[1] if existing else None
            self._data[key] = (value, expires_at)

    def expire(self, key: str, ttl: int) -> None:
        with self._lock:
            item = self._live(key)
            if item is not None:
                self._data[key] = (item[0], self._clock() + ttl)

    def incr(self, key: str, ttl: Optional[int] = None) -> int:
        with self._lock:
            item = self._live(key)
            current = int(item[0]) + 1 if item else 1
            expires_at = item[1] if item else (self._clock() + ttl if ttl else None)
            self._data[key] = (str(current), expires_at)
            return current


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store."""

    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None) -> None:
        self.url = url or os.getenv("HSC_REDIS_URL", "redis://localhost:6379/0")
        self._client = client or redis.from_url(
            self.url,
            decode_responses=True,
            socket_keepalive=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )

    def get(self, key: str) -> Optional[str]:
        return self._client.get(key)

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        if ttl:
            self._client.setex(key, ttl, value)
        else:
            self._client.set(key, value, keepttl=True)

    def expire(self, key: str, ttl: int) -> None:
        self._client.expire(key, ttl)

    def incr(self, key: str, ttl: Optional[int] = None) -> int:
        count = int(self._client.incr(key))
        if count == 1 and ttl:
            self._client.expire(key, ttl)
        return count


def get_default_kv_store() -> KeyValueStore:
    url = os.getenv("HSC_REDIS_URL")
    if url:
        return RedisKeyValueStore(url)
    return InMemoryKeyValueStore()
