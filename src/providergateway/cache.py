"""Bounded LRU cache for embedding vectors."""

import threading
import time
from collections import OrderedDict
from collections.abc import Callable

from providergateway.models import EmbeddingResponse


class EmbeddingCache:
    """Least-recently-used cache keyed by ``(backend, text)`` with a TTL.

    Expired entries are dropped on access; the least recently used entry is
    evicted once *max_size* is exceeded.
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._entries: OrderedDict[tuple[str, str], tuple[float, EmbeddingResponse]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, backend: str, text: str) -> EmbeddingResponse | None:
        key = (backend, text)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl:
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def put(self, backend: str, text: str, value: EmbeddingResponse) -> None:
        key = (backend, text)
        with self._lock:
            self._entries[key] = (self._clock(), value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
