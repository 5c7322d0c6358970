"""Per-feed memory of items that were already notified."""
from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Iterable


class SeenItemsCache:
    """Track recently notified item ids of one feed.

    Entries are evicted once ``capacity`` is exceeded or when they are older
    than ``max_age`` seconds.
    """

    def __init__(
        self,
        capacity: int = 256,
        max_age: float = 6 * 3600.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._capacity = max(1, int(capacity))
        self._max_age = max_age
        self._clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()

    def __contains__(self, item_id: object) -> bool:
        self._evict()
        return item_id in self._seen

    def __len__(self) -> int:
        self._evict()
        return len(self._seen)

    def add(self, item_id: str) -> None:
        self._seen[item_id] = self._clock()
        self._seen.move_to_end(item_id)
        self._evict()

    def _evict(self) -> None:
        while len(self._seen) > self._capacity:
            self._seen.popitem(last=False)
        if self._max_age <= 0:
            return
        cutoff = self._clock() - self._max_age
        while self._seen:
            oldest_id, seen_at = next(iter(self._seen.items()))
            if seen_at >= cutoff:
                break
            del self._seen[oldest_id]


class FeedCaches:
    """Seen-item caches keyed by feed id."""

    def __init__(self, capacity: int = 256, max_age: float = 6 * 3600.0) -> None:
        self._capacity = capacity
        self._max_age = max_age
        self._caches: dict[int, SeenItemsCache] = {}

    def get(self, feed_id: int) -> SeenItemsCache:
        cache = self._caches.get(feed_id)
        if cache is None:
            cache = SeenItemsCache(self._capacity, self._max_age)
            self._caches[feed_id] = cache
        return cache

    def retain(self, feed_ids: Iterable[int]) -> None:
        keep = set(feed_ids)
        for feed_id in list(self._caches):
            if feed_id not in keep:
                del self._caches[feed_id]

    def discard(self, feed_id: int) -> None:
        self._caches.pop(feed_id, None)
