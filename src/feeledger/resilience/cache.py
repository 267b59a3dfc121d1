"""
Bounded cache with per-entry TTL and LRU eviction.

Used to memoize deterministic upstream answers (candidate pool derivations,
provenance verdicts) and processed transaction ids between cycles.
"""

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Generic, Hashable, Optional, Tuple, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING = object()


class LRUCache(Generic[K, V]):
    """
    Memoizes values with LRU eviction and lazy expiry.

    Access promotes recency; inserting into a full cache evicts the least
    recently used entry; an expired entry is dropped when it is looked up.
    """

    def __init__(
        self,
        max_size: int = 100,
        ttl_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError("Cache size must be positive.")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[K, Tuple[Any, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key, _MISSING)
            if entry is _MISSING:
                return default
            value, expires_at = entry
            if self._clock() > expires_at:
                del self._entries[key]
                return default
            # Move to end (LRU)
            self._entries.move_to_end(key)
            return value

    def set(self, key: K, value: V, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries.pop(key, None)
            # Evict LRU if at size limit
            while len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
            self._entries[key] = (value, self._clock() + ttl)

    def has(self, key: K) -> bool:
        return self.get(key, _MISSING) is not _MISSING  # type: ignore[arg-type]

    def __contains__(self, key: K) -> bool:
        return self.has(key)

    def delete(self, key: K) -> bool:
        with self._lock:
            return self._entries.pop(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def cleanup(self) -> int:
        """Remove every expired entry and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._entries.items() if now > expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)
