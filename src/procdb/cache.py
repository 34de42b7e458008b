"""
Table metadata cache for the bulk loader.

Column and identity lookups hit the catalog once per table and engine and are
then served from cachetools TTLCaches until the entries expire.
"""
import functools
import logging
import threading
from typing import Any

import cachetools

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300


class Cache:
    """Process-wide registry of named TTL caches.

    Keys are `(scope, table, args, kwargs)` tuples where the scope is the
    engine URL of the connection that ran the lookup. TTLCache is not
    thread-safe, so every read and write goes through the registry lock.
    """

    _instance: 'Cache | None' = None
    _lock = threading.RLock()

    def __init__(self) -> None:
        self._caches: dict[str, cachetools.TTLCache] = {}

    @classmethod
    def get_instance(cls) -> 'Cache':
        """Get singleton instance."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def get_cache(self, name: str, maxsize: int = 50, ttl: int = DEFAULT_TTL) -> cachetools.TTLCache:
        with self._lock:
            cache = self._caches.get(name)
            if cache is None:
                cache = self._caches[name] = cachetools.TTLCache(maxsize=maxsize, ttl=ttl)
            return cache

    def lookup(self, cache: cachetools.TTLCache, key: tuple) -> Any | None:
        with self._lock:
            return cache.get(key)

    def store(self, cache: cachetools.TTLCache, key: tuple, value: Any) -> None:
        with self._lock:
            cache[key] = value

    def clear_all(self) -> None:
        """Clear all managed caches."""
        with self._lock:
            for cache in self._caches.values():
                cache.clear()

    def clear_for_table(self, table_name: str) -> None:
        """Forget everything cached about `table_name`, in every scope.

        Call after DDL changed the table's columns.
        """
        table_lower = table_name.lower()
        with self._lock:
            for cache in self._caches.values():
                for key in [key for key in cache.keys() if key[1] == table_lower]:
                    cache.pop(key, None)
                    logger.debug(f'Cleared cache entry {key} for table {table_name}')


def _create_cache_key(cn: object, table_name: str, method_args: tuple,
                      method_kwargs: dict) -> tuple:
    """Scope entries to the engine behind `cn`; tables compare case-insensitively."""
    engine = getattr(cn, 'engine', None)
    scope = str(engine.url) if engine is not None else f'conn{id(cn)}'
    kwargs = tuple(sorted((k, repr(v)) for k, v in method_kwargs.items() if k != 'bypass_cache'))
    return scope, table_name.lower(), tuple(repr(arg) for arg in method_args), kwargs


def cacheable_strategy(cache_name: str, ttl: int = DEFAULT_TTL, maxsize: int = 50):
    """Decorator caching a strategy's `(cn, table, ...)` metadata lookup.

    `bypass_cache=True` goes straight to the catalog and leaves the cache
    alone. Callers get a copy of the cached list.
    """
    def decorator(method):
        @functools.wraps(method)
        def wrapper(self, cn, table, *args, bypass_cache=False, **kwargs):
            if bypass_cache:
                logger.debug(f'Bypassing cache for {method.__name__}({table})')
                return method(self, cn, table, *args, **kwargs)

            registry = Cache.get_instance()
            cache = registry.get_cache(f'{cache_name}_{type(self).__name__}', maxsize, ttl)
            key = _create_cache_key(cn, table, args, kwargs)

            cached = registry.lookup(cache, key)
            if cached is not None:
                logger.debug(f'Cache hit for {method.__name__}({table})')
                return list(cached)

            logger.debug(f'Cache miss for {method.__name__}({table})')
            result = method(self, cn, table, *args, **kwargs)
            registry.store(cache, key, tuple(result))
            return list(result)

        return wrapper
    return decorator
