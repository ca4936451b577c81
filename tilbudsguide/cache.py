from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Optional, Tuple, TypeVar

from tilbudsguide.config import CACHE_MAX_ENTRIES, CACHE_TTL_SECONDS

V = TypeVar("V")


class TTLCache(Generic[V]):
    """In-process cache with per-entry expiry and an LRU bound."""

    def __init__(
        self,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        max_entries: int = CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, V]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable) -> Tuple[Optional[V], bool]:
        record = self._entries.get(key)
        if record is None:
            return None, False
        expires_at, value = record
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None, False
        self._entries.move_to_end(key)
        return value, True

    def set(self, key: Hashable, value: V, ttl: Optional[float] = None) -> None:
        ttl_seconds = self.ttl_seconds if ttl is None else ttl
        self._entries[key] = (self._clock() + ttl_seconds, value)
        self._entries.move_to_end(key)
        self._evict()

    def clear(self) -> None:
        self._entries.clear()

    def _evict(self) -> None:
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
