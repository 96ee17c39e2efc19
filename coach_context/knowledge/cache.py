"""In-process cache for knowledge search responses."""

import logging
import time
from collections import OrderedDict
from typing import Callable, Hashable

from coach_context.knowledge.models import RAGResponse

logger = logging.getLogger(__name__)

# Default TTL in seconds (1 hour)
CACHE_TTL_SECONDS = 3600


class SearchCache:
    """TTL cache with a maximum size and least-recently-used eviction.

    Injected into the retriever; clear it after re-embedding so stale
    responses are not served.
    """

    def __init__(
        self,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[Hashable, tuple[float, RAGResponse]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable) -> RAGResponse | None:
        entry = self._entries.get(key)
        if entry is None:
            return None

        stored_at, response = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            # Expired, remove from cache
            del self._entries[key]
            return None

        self._entries.move_to_end(key)
        return response

    def set(self, key: Hashable, response: RAGResponse) -> None:
        self._entries[key] = (self._clock(), response)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Search cache evicted %s", evicted)

    def clear(self) -> None:
        self._entries.clear()
