"""
Expiring in-memory cache shared by the schema, statement and auth layers.

Every removal (pop, purge, evict_where) bumps a generation counter. A load
that started before a removal is not stored, so an invalidation can never
be overtaken by a value read before it.

Invariants:
    - Every entry expires after ``ttl_seconds`` regardless of explicit invalidation
    - At capacity the least recently used entry is evicted
    - All methods are safe to call concurrently from multiple threads
    - The lock is never held while a loader runs

How to change safely:
    - Any new way of removing entries must bump ``_generation``
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from typing import Any, Generic, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING = object()


class ExpiringCache(Generic[K, V]):
    """Lock-guarded LRU map with per-entry expiry.

    Expired entries are dropped lazily on access, and swept whenever a
    write finds the cache full.

    Example:
        >>> cache = ExpiringCache(max_size=2, ttl_seconds=300)
        >>> cache.set("admin:orders:read", True)
        True
        >>> cache.get("admin:orders:read")
        True
    """

    def __init__(
        self,
        max_size: int,
        ttl_seconds: float,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be greater than 0")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._timer = timer
        self._entries: OrderedDict[K, tuple[float, V]] = OrderedDict()
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def generation(self) -> int:
        """Removal counter; read it before loading a value to store with set()."""
        with self._lock:
            return self._generation

    def get(self, key: K, default: Any = None) -> V | Any:
        with self._lock:
            value = self._live(key, self._timer())
            return default if value is _MISSING else value

    def set(self, key: K, value: V, generation: int | None = None) -> bool:
        """Store ``value`` under ``key``.

        With ``generation`` the value is stored only if nothing was removed
        from the cache since that generation was read.

        Returns:
            Whether the value was stored
        """
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            self._store(key, value, self._timer())
            return True

    def get_or_set(self, key: K, factory: Callable[[], V]) -> V:
        """Return the live entry for ``key``, loading it with ``factory`` on a miss.

        ``factory`` runs outside the lock. Its result is stored only if no
        removal happened while it ran. When concurrent loaders race for one
        key, the first stored value wins and every caller gets that instance.
        """
        with self._lock:
            value = self._live(key, self._timer())
            if value is not _MISSING:
                return value
            generation = self._generation

        loaded = factory()

        with self._lock:
            now = self._timer()
            value = self._live(key, now)
            if value is not _MISSING:
                return value
            if generation == self._generation:
                self._store(key, loaded, now)
            return loaded

    def pop(self, key: K, default: Any = None) -> V | Any:
        with self._lock:
            self._generation += 1
            entry = self._entries.pop(key, _MISSING)
            if entry is _MISSING:
                return default
            return entry[1]

    def evict_where(self, predicate: Callable[[K], bool]) -> list[V]:
        """Remove every entry whose key satisfies ``predicate``.

        Returns:
            The evicted values, so callers can release resources they own.
        """
        with self._lock:
            self._generation += 1
            keys = [key for key in self._entries if predicate(key)]
            return [self._entries.pop(key)[1] for key in keys]

    def purge(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()

    def _live(self, key: K, now: float) -> V | Any:
        # Caller holds self._lock.
        entry = self._entries.get(key)
        if entry is None:
            return _MISSING
        expires_at, value = entry
        if now >= expires_at:
            del self._entries[key]
            return _MISSING
        self._entries.move_to_end(key)
        return value

    def _store(self, key: K, value: V, now: float) -> None:
        # Caller holds self._lock.
        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self.max_size:
            self._sweep(now)
            while len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
        self._entries[key] = (now + self.ttl_seconds, value)

    def _sweep(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]

    def __contains__(self, key: object) -> bool:
        return self.get(key, _MISSING) is not _MISSING  # type: ignore[arg-type]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
