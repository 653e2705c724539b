"""Key-value cache capability with per-entry TTL.

Used for interactive results (``calc:sync:{fingerprint}``) and for the
ephemeral progress channel (``calc:progress:{calculation_id}``). Values are
strings; callers own serialization.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from redis.exceptions import RedisError

if TYPE_CHECKING:
    from redis import Redis

logger = logging.getLogger(__name__)

SYNC_RESULT_KEY_PREFIX = "calc:sync:"
PROGRESS_KEY_PREFIX = "calc:progress:"


class CacheStoreError(Exception):
    """Raised when the backing cache cannot be read or written."""

    def __init__(self, operation: str, key: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.key = key
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Cache {operation} failed for key '{key}'{detail}")


def sync_result_key(fingerprint: str) -> str:
    return f"{SYNC_RESULT_KEY_PREFIX}{fingerprint}"


def progress_key(calculation_id: str) -> str:
    return f"{PROGRESS_KEY_PREFIX}{calculation_id}"


@runtime_checkable
class CacheStore(Protocol):
    """String cache with expiry.

    Implementations raise CacheStoreError on backend failure; a missing or
    expired key is not an error and reads as None.
    """

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...


@dataclass
class _Entry:
    value: str
    expires_at: datetime


class InMemoryCacheStore:
    """Process-local cache store with TTL expiry.

    Expired entries are evicted lazily on read. The clock is injectable so
    tests can move time forward.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._store: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._clock = clock or (lambda: datetime.now(UTC))

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._store[key]
                return None
            return entry.value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._store[key] = _Entry(
                value=value, expires_at=self._clock() + timedelta(seconds=ttl_seconds)
            )

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._store)


class RedisCacheStore:
    """Cache store backed by Redis string keys with native expiry."""

    def __init__(self, client: Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCacheStore:
        from redis import Redis

        return cls(Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> str | None:
        try:
            value = self._client.get(key)
        except RedisError as e:
            raise CacheStoreError("get", key, e) from e
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self._client.setex(key, ttl_seconds, value)
        except RedisError as e:
            raise CacheStoreError("set", key, e) from e

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except RedisError as e:
            raise CacheStoreError("delete", key, e) from e
