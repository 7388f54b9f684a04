"""In-memory TTL cache for chatrelay.

Used for verified bearer tokens so that a burst of REST calls and socket
reconnects from the same client does not hit the verification service every
time. Keys are token fingerprints, never raw tokens.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

from .metrics import metrics


@dataclass
class CacheEntry:
    value: Any
    expires_at: float

    def is_expired(self) -> bool:
        return time.time() > self.expires_at


@dataclass
class TTLCache:
    """Thread-safe TTL cache with LRU eviction.

    Args:
        name: Name of the cache (for metrics)
        default_ttl: Default TTL in seconds (0 = no expiration, rely on LRU)
        max_size: Maximum number of entries (LRU eviction when exceeded)
    """

    name: str
    default_ttl: float = 300.0
    max_size: int = 1000
    _data: OrderedDict[str, CacheEntry] = field(default_factory=OrderedDict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def get(self, key: str) -> tuple[bool, Any]:
        """Get a value from the cache.

        Returns:
            (hit, value) tuple. If hit is False, value is None.
        """
        with self._lock:
            entry = self._data.get(key)
            if entry is None or entry.is_expired():
                if entry is not None:
                    del self._data[key]
                metrics.record_cache_miss(self.name)
                return False, None

            self._data.move_to_end(key)
            metrics.record_cache_hit(self.name)
            return True, entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        if ttl is None:
            ttl = self.default_ttl

        with self._lock:
            if key not in self._data and len(self._data) >= self.max_size:
                self._evict_expired()
                while len(self._data) >= self.max_size:
                    self._data.popitem(last=False)

            expires_at = time.time() + ttl if ttl > 0 else float("inf")
            self._data[key] = CacheEntry(value=value, expires_at=expires_at)
            self._data.move_to_end(key)

    def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""
        with self._lock:
            return self._data.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def purge_expired(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        with self._lock:
            before = len(self._data)
            self._evict_expired()
            return before - len(self._data)

    def _evict_expired(self) -> None:
        """Evict all expired entries. Must be called with lock held."""
        now = time.time()
        for key in [k for k, v in self._data.items() if v.expires_at <= now]:
            del self._data[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def stats(self) -> dict:
        with self._lock:
            return {
                "size": len(self._data),
                "max_size": self.max_size,
                "ttl_seconds": self.default_ttl,
            }
