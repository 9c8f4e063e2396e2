"""
Expiring cache with single-flight refresh.

Entries carry an explicit expiry timestamp. get_or_fetch() lets at most one
thread refresh a given key; concurrent callers for that key wait for the
refresh and reuse its value.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, Optional, TypeVar

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    expires_at: float


class ExpiringCache:
    def __init__(self, ttl: float = 5.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry] = {}
        self._entries_lock = threading.Lock()
        self._key_locks: dict[Hashable, threading.Lock] = {}

    def _key_lock(self, key: Hashable) -> threading.Lock:
        with self._entries_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def get(self, key: Hashable) -> Optional[Any]:
        with self._entries_lock:
            entry = self._entries.get(key)
            if entry is None or entry.expires_at <= self._clock():
                return None
            return entry.value

    def put(self, key: Hashable, value: Any) -> None:
        with self._entries_lock:
            self._entries[key] = CacheEntry(value, self._clock() + self.ttl)

    def get_or_fetch(self, key: Hashable, fetch: Callable[[], T]) -> T:
        value = self.get(key)
        if value is not None:
            return value

        with self._key_lock(key):
            # Another thread may have refreshed while we waited
            value = self.get(key)
            if value is not None:
                return value
            value = fetch()
            self.put(key, value)
            return value

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one key, or everything when key is None."""
        with self._entries_lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def expires_at(self, key: Hashable) -> Optional[float]:
        with self._entries_lock:
            entry = self._entries.get(key)
            return entry.expires_at if entry else None
