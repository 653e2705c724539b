"""Cache capability: interactive results and ephemeral progress."""

from ockham.cache.store import (
    CacheStore,
    CacheStoreError,
    InMemoryCacheStore,
    RedisCacheStore,
    progress_key,
    sync_result_key,
)

__all__ = [
    "CacheStore",
    "CacheStoreError",
    "InMemoryCacheStore",
    "RedisCacheStore",
    "progress_key",
    "sync_result_key",
]
