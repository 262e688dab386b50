"""Namespaced TTL caches shared by the dispatcher, sizer and monitor."""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Hashable, Optional, TypeVar

from cachetools import TTLCache

from ..config.settings import CacheConfig, get_app_config

T = TypeVar("T")

_MISSING = object()


class CacheNamespace(str, Enum):
    """Data classes held in memory, each with its own expiry policy."""

    TOKEN_METADATA = "token_metadata"
    PRICE = "price"
    TRACKERS = "trackers"
    POSITIONS = "positions"
    BLACKLIST = "blacklist"
    AUTO_SELL_USERS = "auto_sell_users"
    SEEN_SIGNATURES = "seen_signatures"


def _ttl_for(namespace: CacheNamespace, config: CacheConfig) -> float:
    return {
        CacheNamespace.TOKEN_METADATA: config.token_metadata_ttl_seconds,
        CacheNamespace.PRICE: config.price_ttl_seconds,
        CacheNamespace.TRACKERS: config.trackers_ttl_seconds,
        CacheNamespace.POSITIONS: config.positions_ttl_seconds,
        CacheNamespace.BLACKLIST: config.blacklist_ttl_seconds,
        CacheNamespace.AUTO_SELL_USERS: config.auto_sell_users_ttl_seconds,
        CacheNamespace.SEEN_SIGNATURES: config.seen_signatures_ttl_seconds,
    }[namespace]


class TTLCacheRegistry:
    """One ``TTLCache`` per namespace.

    Cached values are copies of ledger state and are never authoritative.
    Callers store immutable values (tuples, frozensets, frozen dataclasses)
    and replace them wholesale; nothing is mutated in place. Expired entries
    are dropped lazily on access and eagerly by :meth:`sweep`. The internal
    lock only protects the cache structures; loaders run outside it, so two
    concurrent misses may both load and the last write wins.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        *,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or get_app_config().cache
        self._lock = threading.RLock()
        self._caches: Dict[CacheNamespace, TTLCache] = {
            namespace: TTLCache(
                maxsize=self._config.max_entries,
                ttl=_ttl_for(namespace, self._config),
                timer=timer,
            )
            for namespace in CacheNamespace
        }

    def ttl(self, namespace: CacheNamespace) -> float:
        return self._caches[namespace].ttl

    def get(self, namespace: CacheNamespace, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            return self._caches[namespace].get(key, default)

    def contains(self, namespace: CacheNamespace, key: Hashable) -> bool:
        with self._lock:
            return key in self._caches[namespace]

    def set(self, namespace: CacheNamespace, key: Hashable, value: Any) -> None:
        with self._lock:
            self._caches[namespace][key] = value

    def get_or_load(self, namespace: CacheNamespace, key: Hashable, loader: Callable[[], T]) -> T:
        """Return the cached value or populate it from ``loader``.

        Loader exceptions propagate and nothing is cached.
        """

        with self._lock:
            cached = self._caches[namespace].get(key, _MISSING)
        if cached is not _MISSING:
            return cached
        value = loader()
        with self._lock:
            self._caches[namespace][key] = value
        return value

    def add_if_absent(self, namespace: CacheNamespace, key: Hashable, value: Any = True) -> bool:
        """Store ``value`` unless a live entry exists; return True when stored."""

        with self._lock:
            cache = self._caches[namespace]
            if key in cache:
                return False
            cache[key] = value
            return True

    def invalidate(self, namespace: CacheNamespace, key: Hashable) -> None:
        with self._lock:
            self._caches[namespace].pop(key, None)

    def clear(self, namespace: Optional[CacheNamespace] = None) -> None:
        with self._lock:
            if namespace is None:
                for cache in self._caches.values():
                    cache.clear()
                return
            self._caches[namespace].clear()

    def size(self, namespace: CacheNamespace) -> int:
        with self._lock:
            cache = self._caches[namespace]
            cache.expire()
            return len(cache)

    def sweep(self) -> int:
        """Drop expired entries from every namespace; return how many went."""

        removed = 0
        with self._lock:
            for cache in self._caches.values():
                removed += len(cache.expire())
        return removed


__all__ = ["CacheNamespace", "TTLCacheRegistry"]
