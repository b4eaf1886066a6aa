"""Per-process caches for templates, workflows and account settings.

Caches are keyed by identity and bounded by TTL. Any mutation of the cached
entities calls :func:`invalidate_all` so that later reads in the same process
go back to the store.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Hashable


class TTLCache:
    def __init__(self, name: str, ttl_seconds: float = 300.0, max_entries: int = 1024) -> None:
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries: dict[Hashable, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at < time.monotonic():
                self._entries.pop(key, None)
                return None
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            if len(self._entries) >= self.max_entries:
                oldest = min(self._entries.items(), key=lambda item: item[1][0])[0]
                self._entries.pop(oldest, None)
            self._entries[key] = (time.monotonic() + self.ttl_seconds, value)

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is None:
            value = loader()
            if value is not None:
                self.set(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


_REGISTRY: dict[str, TTLCache] = {}
_REGISTRY_LOCK = threading.Lock()


def get_cache(name: str, ttl_seconds: float = 300.0) -> TTLCache:
    with _REGISTRY_LOCK:
        cache = _REGISTRY.get(name)
        if cache is None:
            cache = TTLCache(name, ttl_seconds=ttl_seconds)
            _REGISTRY[name] = cache
        return cache


def invalidate_all() -> None:
    with _REGISTRY_LOCK:
        caches = list(_REGISTRY.values())
    for cache in caches:
        cache.clear()
