"""Process-wide in-memory caches for geocoding results and distance matrices."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Hashable, Optional

from ..config import settings


class TTLCache:
    """Thread-safe key/value store whose entries expire ``ttl_seconds`` after being set."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._store: dict[Hashable, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._store[key]
                return None
            return value

    def set(self, key: Hashable, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._store[key] = (self._clock() + ttl, value)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for expires_at, _ in self._store.values() if now < expires_at)


geocode_cache = TTLCache(settings.geocode_cache_ttl_seconds)
matrix_cache = TTLCache(settings.matrix_cache_ttl_seconds)
