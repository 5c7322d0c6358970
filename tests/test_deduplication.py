from feed_notifier.deduplication import FeedCaches, SeenItemsCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_seen_items_evicted_by_capacity() -> None:
    cache = SeenItemsCache(capacity=2, max_age=0)
    cache.add("1")
    cache.add("2")
    assert "1" in cache

    cache.add("3")

    # oldest entry goes once capacity is exceeded
    assert "1" not in cache
    assert "2" in cache and "3" in cache
    assert len(cache) == 2


def test_seen_items_expire_with_age() -> None:
    clock = FakeClock()
    cache = SeenItemsCache(capacity=10, max_age=60.0, clock=clock)
    cache.add("1")
    clock.now = 30.0
    cache.add("2")

    clock.now = 75.0
    assert "1" not in cache
    assert "2" in cache


def test_feed_caches_follow_tracked_feeds() -> None:
    caches = FeedCaches()
    caches.get(1).add("a")
    caches.get(2).add("b")
    assert "a" in caches.get(1)

    caches.retain([2])
    assert "a" not in caches.get(1)
    assert "b" in caches.get(2)

    caches.discard(2)
    assert "b" not in caches.get(2)
