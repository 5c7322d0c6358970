"""Periodic timeline checks for tracked Twitter accounts."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial

from .dispatcher import NotificationDispatcher
from .errors import Err, ErrorKind
from .ledger import NotificationLedger
from .models import TWITTER, Feed, SocialUser
from .registry import FeedRegistry
from .resolver import TargetResolver
from .scheduler import PollingWatcher
from .store import TrackerStore, UnitOfWork
from .twitter import TwitterClient
from .utils import snowflake_key, utcnow

logger = logging.getLogger(__name__)

MAX_POST_AGE = timedelta(hours=2)
POST_RECORD_RETENTION = timedelta(days=7)


@dataclass(slots=True)
class _PassState:
    require_update: list[Feed] = field(default_factory=list)
    max_id: int = 0
    rate_limit: float | None = None


class TwitterChecker(PollingWatcher):
    """Sequential timeline polling.

    Feeds whose stored cursor was rejected by the API are fast-forwarded to
    the highest post id observed anywhere in the same pass. A rate limit ends
    the pass early; the next pass starts again from the limited feed.
    """

    platform = TWITTER

    def __init__(
        self,
        store: TrackerStore,
        twitter: TwitterClient,
        registry: FeedRegistry,
        resolver: TargetResolver,
        ledger: NotificationLedger,
        dispatcher: NotificationDispatcher,
        *,
        now: Callable[[], datetime] = utcnow,
        **kwargs,
    ):
        super().__init__(store, **kwargs)
        self._twitter = twitter
        self._registry = registry
        self._resolver = resolver
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._now = now
        self._resume_feed_id: int | None = None

    async def update_all(self) -> int:
        feeds = self._registry.feeds(TWITTER)
        self._registry.forget_missing(feeds)
        state = _PassState()
        processed = 0
        for feed in self._rotate(feeds):
            if await self.run_feed_task(feed, partial(self.update_feed, state=state)):
                processed += 1
            if state.rate_limit is not None:
                self._resume_feed_id = feed.id
                self.defer_until_reset(state.rate_limit)
                break
        else:
            self._resume_feed_id = None

        if state.max_id:
            for feed in state.require_update:
                self._store.set_feed_cursor(feed.id, str(state.max_id))
                logger.info(
                    "Курсор @%s сдвинут до %s", feed.display_name or feed.external_id, state.max_id
                )
        return processed

    def _rotate(self, feeds: list[Feed]) -> list[Feed]:
        for index, feed in enumerate(feeds):
            if feed.id == self._resume_feed_id:
                return feeds[index:] + feeds[:index]
        return feeds

    async def update_feed(self, uow: UnitOfWork, *, state: _PassState) -> None:
        feed = uow.feed
        targets = await self._resolver.resolve(uow)
        if not targets:
            return

        settings = [uow.features(target.channel_id).posts for target in targets]
        result = await self._twitter.fetch_recent_posts(
            feed.external_id,
            since_id=feed.last_item_id,
            include_retweets=any(item.retweets for item in settings),
            include_replies=any(item.replies for item in settings),
            include_quotes=any(item.quotes for item in settings),
        )
        if isinstance(result, Err):
            self._fetch_failed(uow, result, state)
            return

        user, posts = result.value
        if user is not None:
            self._registry.set_display_name(uow, user.username)
        now = self._now()
        cache = self._registry.seen(feed)
        cursor = snowflake_key(feed.last_item_id)
        latest = cursor

        for post in sorted(posts, key=lambda item: item.numeric_id):
            latest = max(latest, post.numeric_id)
            if post.numeric_id <= cursor or post.id in cache:
                continue
            if now - post.created_at > MAX_POST_AGE:
                continue
            if user is None:
                user = await self._user(uow)
                if user is None:
                    return
            cache.add(post.id)
            await self._dispatcher.post(uow, targets, user, post)

        if latest > cursor:
            self._registry.set_cursor(uow, str(latest))
        state.max_id = max(state.max_id, latest)
        self._ledger.prune_posts(uow, now - POST_RECORD_RETENTION)

    def _fetch_failed(self, uow: UnitOfWork, result: Err, state: _PassState) -> None:
        feed = uow.feed
        name = feed.display_name or feed.external_id
        if result.kind is ErrorKind.INVALID_CURSOR:
            logger.info("Курсор @%s отклонён API, будет сдвинут в конце прохода", name)
            state.require_update.append(feed)
        elif result.kind is ErrorKind.RATE_LIMITED:
            state.rate_limit = result.error.reset_after
        elif result.kind is ErrorKind.NOT_FOUND:
            logger.info("Аккаунт @%s больше не существует", name)
            self._registry.delete_feed(uow)
        else:
            logger.warning("Не удалось получить ленту @%s: %s", name, result.error)

    async def _user(self, uow: UnitOfWork) -> SocialUser | None:
        feed = uow.feed
        result = await uow.memo.get(
            ("user", feed.external_id), lambda: self._twitter.fetch_user(feed.external_id)
        )
        if isinstance(result, Err):
            logger.warning("Не удалось получить профиль @%s: %s", feed.display_name, result.error)
            return None
        return result.value
