"""Periodic live-stream checks for tracked Twitch channels."""

from __future__ import annotations

import asyncio
import logging
from functools import partial

from .dispatcher import NotificationDispatcher
from .errors import Err, ErrorKind
from .ledger import NotificationLedger
from .models import TWITCH, StreamInfo, StreamUser
from .registry import FeedRegistry
from .resolver import TargetResolver
from .scheduler import PollingWatcher
from .store import TrackerStore, UnitOfWork
from .twitch import TwitchClient

logger = logging.getLogger(__name__)


class TwitchChecker(PollingWatcher):
    platform = TWITCH

    def __init__(
        self,
        store: TrackerStore,
        twitch: TwitchClient,
        registry: FeedRegistry,
        resolver: TargetResolver,
        ledger: NotificationLedger,
        dispatcher: NotificationDispatcher,
        **kwargs,
    ):
        super().__init__(store, **kwargs)
        self._twitch = twitch
        self._registry = registry
        self._resolver = resolver
        self._ledger = ledger
        self._dispatcher = dispatcher

    async def update_all(self) -> int:
        feeds = self._registry.feeds(TWITCH)
        if not feeds:
            return 0
        by_id = {feed.external_id: feed for feed in feeds}
        streams = await self._twitch.fetch_streams(by_id)

        limits = [
            result.error.reset_after
            for result in streams.values()
            if isinstance(result, Err) and result.kind is ErrorKind.RATE_LIMITED
        ]
        if limits:
            self.defer_until_reset(max(limits))
            return 0

        tasks = []
        for external_id, result in streams.items():
            feed = by_id.get(external_id)
            if feed is None:
                continue
            if isinstance(result, Err):
                logger.warning(
                    "Не удалось получить статус трансляции %s: %s",
                    feed.display_name or external_id,
                    result.error,
                )
                continue
            tasks.append(self.run_feed_task(feed, partial(self.update_feed, stream=result.value)))
        outcomes = await asyncio.gather(*tasks)
        return sum(1 for ok in outcomes if ok)

    async def update_feed(self, uow: UnitOfWork, *, stream: StreamInfo | None) -> None:
        targets = await self._resolver.resolve(uow)
        if targets is None:
            return
        if stream is None:
            await self._stream_offline(uow)
            return

        event = self._ledger.stream_event(uow)
        if event is None:
            self._ledger.open_stream(uow, stream)
            changed = False
        else:
            changed = self._ledger.update_stream(uow, event, stream)

        user = await self._user(uow)
        if user is None:
            return
        self._registry.set_display_name(uow, user.login)
        game_art = await self._twitch.fetch_game_art(stream.game_id)
        await self._dispatcher.stream_live(
            uow, targets, user, stream, changed=changed, game_art=game_art
        )

    async def _stream_offline(self, uow: UnitOfWork) -> None:
        if not self._ledger.for_feed(uow):
            if self._ledger.stream_event(uow) is not None:
                self._ledger.close_stream(uow)
            return
        user = None
        if self._ledger.stream_event(uow) is not None:
            user = await self._user(uow)
            if self._registry.feed(uow.feed.id) is None:
                return
        if user is None:
            feed = uow.feed
            name = feed.display_name or feed.external_id
            user = StreamUser(id=feed.external_id, login=name, display_name=name)
        await self._dispatcher.stream_ended(uow, user)

    async def _user(self, uow: UnitOfWork) -> StreamUser | None:
        feed = uow.feed
        result = await uow.memo.get(
            ("user", feed.external_id), lambda: self._twitch.fetch_user(feed.external_id)
        )
        if isinstance(result, Err):
            if result.kind is ErrorKind.NOT_FOUND:
                logger.info("Канал Twitch %s больше не существует", feed.display_name)
                self._registry.delete_feed(uow)
            else:
                logger.warning(
                    "Не удалось получить профиль Twitch %s: %s", feed.display_name, result.error
                )
            return None
        return result.value
