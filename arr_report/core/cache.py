"""
Process-local cache with TTL eviction.

Instances are owned by whoever builds them (normally a ReportService), so
tests construct isolated caches instead of sharing module state.
"""

import threading
import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Thread-safe key/value cache whose entries expire after ``ttl_seconds``.

    A ``ttl_seconds`` of None keeps entries for the cache's lifetime. When
    ``max_entries`` is set, the oldest entries are evicted first.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds is not None and ttl_seconds < 0:
            raise ValueError("ttl_seconds cannot be negative")
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[Optional[float], V]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock:
            hit = self._entries.get(key)
            if hit is None:
                return None
            expires_at, value = hit
            if expires_at is not None and expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: Hashable, value: V) -> None:
        expires_at = None
        if self.ttl_seconds is not None:
            expires_at = self._clock() + self.ttl_seconds
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (expires_at, value)
            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
