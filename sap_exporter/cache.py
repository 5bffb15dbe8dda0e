# sap_exporter/cache.py
"""
In-memory TTL cache with single-flight population.

This is per-process cache. If you run multiple gunicorn workers, each worker has its own cache.

One cache instance is meant to hold one kind of value (instance directories,
process lists, ...), so each use case builds its own typed ``TTLCache[...]`` and
readers never have to check what they got back.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Iterator, Optional, Tuple, TypeVar

T = TypeVar("T")

# A loader returns the fresh value together with the TTL (seconds) to keep it for.
Loader = Callable[[], Tuple[T, float]]


@dataclass(frozen=True)
class CacheStats:
    """Read-only snapshot of the cache counters."""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    updates: int = 0
    deletes: int = 0
    expired: int = 0


@dataclass
class CacheEntry(Generic[T]):
    """A single cached value and the clock time it expires at (None = never)."""
    value: T
    expires_at: Optional[float]

    def alive(self, now: float) -> bool:
        """Return True while the entry has not expired."""
        return self.expires_at is None or self.expires_at > now


class _ReadWriteLock:
    """Many readers or a single writer. A waiting writer holds off new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class TTLCache(Generic[T]):
    """A key/value TTL cache with lazy, single-flight loading."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize an empty cache store."""
        self._store: Dict[str, CacheEntry[T]] = {}
        self._lock = _ReadWriteLock()
        self._clock = clock

        self._counters: Dict[str, int] = dict.fromkeys(
            ("hits", "misses", "sets", "updates", "deletes", "expired"), 0
        )
        self._stats_lock = threading.Lock()

    def _count(self, *names: str) -> None:
        with self._stats_lock:
            for name in names:
                self._counters[name] += 1

    def _expiry(self, ttl_seconds: float) -> Optional[float]:
        if ttl_seconds <= 0:
            return None
        return self._clock() + ttl_seconds

    def get_or_set(self, key: str, loader: Loader[T]) -> T:
        """
        Retrieve a cached value if not expired, otherwise compute & store a new value.

        Only one loader runs per cache at a time: concurrent callers that miss on
        the same key wait for the running loader and then read its result.

        Args:
            key: Cache key.
            loader: Function returning ``(value, ttl_seconds)``. A TTL <= 0 keeps
                the value until it is overwritten or deleted.

        Returns:
            The cached or newly loaded value.

        Raises:
            Whatever the loader raises; nothing is stored in that case.
        """
        with self._lock.read():
            entry = self._store.get(key)
            if entry is not None and entry.alive(self._clock()):
                self._count("hits")
                return entry.value

        with self._lock.write():
            # Somebody may have refreshed the key while we waited for the lock.
            entry = self._store.get(key)
            if entry is not None and entry.alive(self._clock()):
                self._count("hits")
                return entry.value

            value, ttl_seconds = loader()
            self._store[key] = CacheEntry(value=value, expires_at=self._expiry(ttl_seconds))
            # An expired entry is counted once, when the store replaces it.
            if entry is not None:
                self._count("misses", "sets", "expired")
            else:
                self._count("misses", "sets")
            return value

    def get(self, key: str) -> Optional[T]:
        """Return a live value or None. Does not touch the statistics."""
        with self._lock.read():
            entry = self._store.get(key)
            if entry is not None and entry.alive(self._clock()):
                return entry.value
        return None

    def set(self, key: str, value: T, ttl_seconds: float) -> None:
        """Store a value unconditionally."""
        with self._lock.write():
            entry = self._store.get(key)
            live = entry is not None and entry.alive(self._clock())
            self._store[key] = CacheEntry(value=value, expires_at=self._expiry(ttl_seconds))
            self._count("updates" if live else "sets")

    def delete(self, key: str) -> bool:
        """Drop a key. Returns True if something was removed."""
        with self._lock.write():
            if self._store.pop(key, None) is None:
                return False
        self._count("deletes")
        return True

    def sweep(self) -> int:
        """Remove all expired entries. Returns count removed."""
        with self._lock.write():
            now = self._clock()
            stale = [k for k, e in self._store.items() if not e.alive(now)]
            for k in stale:
                del self._store[k]
        with self._stats_lock:
            self._counters["expired"] += len(stale)
        return len(stale)

    def stats(self) -> CacheStats:
        """Return a snapshot of the counters."""
        with self._stats_lock:
            return CacheStats(**self._counters)

    def clear(self) -> None:
        """Clear all cached entries."""
        with self._lock.write():
            self._store.clear()

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._store)
