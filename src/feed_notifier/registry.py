"""Tracked feeds and their Discord delivery targets."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .deduplication import FeedCaches, SeenItemsCache
from .models import Feed, Target
from .store import TrackerStore, UnitOfWork

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TrackResult:
    feed: Feed
    target: Target
    created: bool


class FeedRegistry:
    """Feed/target bookkeeping on top of the store.

    Also owns the per-feed caches of already notified item ids, which live
    only in memory and are dropped together with their feed.
    """

    def __init__(self, store: TrackerStore, caches: FeedCaches | None = None):
        self._store = store
        self._caches = caches or FeedCaches()

    def feeds(self, platform: str) -> list[Feed]:
        return self._store.list_feeds(platform)

    def feed(self, feed_id: int) -> Feed | None:
        return self._store.get_feed(feed_id)

    def track(
        self,
        platform: str,
        external_id: str,
        display_name: str,
        *,
        channel_id: str,
        guild_id: str | None,
        user_id: str,
    ) -> TrackResult:
        with self._store.atomic():
            feed = self._store.add_feed(platform, external_id, display_name)
            existing = self._store.find_target(feed.id, channel_id)
            if existing is not None:
                return TrackResult(feed=feed, target=existing, created=False)
            target = self._store.add_target(feed.id, channel_id, guild_id, user_id)
            if target is None:
                raise RuntimeError(
                    f"Не удалось добавить канал {channel_id} для {platform}/{external_id}"
                )
        logger.info(
            "Канал %s теперь отслеживает %s/%s", channel_id, platform, display_name or external_id
        )
        return TrackResult(feed=feed, target=target, created=True)

    def untrack(self, platform: str, external_id: str, channel_id: str) -> bool:
        feed = self._store.find_feed(platform, external_id)
        if feed is None:
            return False
        target = self._store.find_target(feed.id, channel_id)
        if target is None:
            return False
        self._store.delete_target(target.id)
        return True

    def delete_feed(self, uow: UnitOfWork) -> None:
        feed = uow.feed
        uow.store.delete_feed(feed.id)
        self._caches.discard(feed.id)
        logger.info(
            "Отслеживание %s/%s прекращено", feed.platform, feed.display_name or feed.external_id
        )

    def delete_target(self, uow: UnitOfWork, target: Target) -> bool:
        return uow.store.delete_target(target.id)

    def targets(self, uow: UnitOfWork) -> list[Target]:
        return uow.store.list_targets(uow.feed.id)

    def count_targets(self, uow: UnitOfWork) -> int:
        return uow.store.count_targets(uow.feed.id)

    def set_cursor(self, uow: UnitOfWork, item_id: str) -> None:
        uow.store.set_feed_cursor(uow.feed.id, item_id)
        uow.feed.last_item_id = item_id

    def set_display_name(self, uow: UnitOfWork, display_name: str) -> None:
        if not display_name or display_name == uow.feed.display_name:
            return
        uow.store.set_feed_name(uow.feed.id, display_name)
        uow.feed.display_name = display_name

    def set_mention(self, target: Target, role_id: str | None, text: str | None) -> None:
        if not role_id and not text:
            self.clear_mention(target)
            return
        self._store.set_mention(target.id, role_id, text)

    def clear_mention(self, target: Target) -> bool:
        return self._store.delete_mention(target.id)

    def seen(self, feed: Feed) -> SeenItemsCache:
        return self._caches.get(feed.id)

    def forget_missing(self, feeds: list[Feed]) -> None:
        self._caches.retain(feed.id for feed in feeds)
