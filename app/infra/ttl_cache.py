# app/infra/ttl_cache.py
from __future__ import annotations
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Generic, Hashable, Optional, TypeVar

from app.infra.logging_config import get_logger

logger = get_logger(__name__)

V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[V]):
    """
    Small in-process key/value cache with per-entry expiry.

    The clock is injected (``time.monotonic`` by default) so expiry can be
    driven deterministically in tests.  Each process holds its own copy;
    entries are lost on restart.
    """

    def __init__(
            self,
            ttl_seconds: float,
            clock: Callable[[], float] = time.monotonic,
            max_entries: int = 1024,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry[V]] = {}
        self._lock = Lock()

    def get(self, key: Hashable) -> Optional[V]:
        """Return the cached value, or None when absent or expired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= now:
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: Hashable, value: V) -> None:
        now = self._clock()
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_expired(now)
                if len(self._entries) >= self.max_entries:
                    # Oldest insertion goes first
                    oldest = next(iter(self._entries))
                    del self._entries[oldest]
            self._entries[key] = CacheEntry(value=value, expires_at=now + self.ttl_seconds)

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict_expired(self, now: float) -> int:
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"TTL cache evicted {len(expired)} expired entries")
        return len(expired)
