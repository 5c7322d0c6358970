"""Application wiring: clients, checkers and their supervision."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

import aiohttp

from .discord import DiscordClient
from .dispatcher import NotificationDispatcher
from .errors import Err, ErrorKind
from .ledger import NotificationLedger
from .models import TWITCH, TWITTER, Feed, RuntimeOptions
from .registry import FeedRegistry, TrackResult
from .resolver import TargetResolver
from .scheduler import PollingWatcher
from .store import TrackerStore
from .twitch import TwitchClient
from .twitch_checker import TwitchChecker
from .twitter import TwitterClient
from .twitter_checker import TwitterChecker

logger = logging.getLogger(__name__)


class TrackError(Exception):
    """A track/untrack request that cannot be fulfilled."""


class FeedNotifierApp:
    def __init__(
        self,
        *,
        db_path: Path,
        discord_token: str | None = None,
        twitch_client_id: str | None = None,
        twitch_client_secret: str | None = None,
        twitter_bearer: str | None = None,
    ):
        self._store = TrackerStore(db_path)
        self._discord_token = discord_token
        self._twitch_credentials = (
            (twitch_client_id, twitch_client_secret)
            if twitch_client_id and twitch_client_secret
            else None
        )
        self._twitter_bearer = twitter_bearer
        self.registry = FeedRegistry(self._store)

    @property
    def store(self) -> TrackerStore:
        return self._store

    async def run(self) -> None:
        runtime = self._store.load_runtime_options()
        async with aiohttp.ClientSession() as session:
            discord = DiscordClient(session, self._discord_token)
            watchers = self.build_watchers(session, discord, runtime)
            if not watchers:
                logger.error("Не настроена ни одна платформа, нечего отслеживать")
                return
            tasks = [
                asyncio.create_task(
                    self._supervise(f"{watcher.platform}-checker", watcher.run),
                    name=f"{watcher.platform}-checker-supervisor",
                )
                for watcher in watchers
            ]
            await asyncio.gather(*tasks)

    def build_watchers(
        self,
        session: aiohttp.ClientSession,
        discord: DiscordClient,
        runtime: RuntimeOptions,
    ) -> list[PollingWatcher]:
        ledger = NotificationLedger()
        resolver = TargetResolver(discord, self.registry)
        dispatcher = NotificationDispatcher(
            discord,
            self.registry,
            ledger,
            timeout=runtime.discord_timeout,
            mention_cooldown=runtime.mention_cooldown,
        )
        watchers: list[PollingWatcher] = []
        if self._twitch_credentials is not None:
            client_id, client_secret = self._twitch_credentials
            twitch = TwitchClient(
                session, client_id, client_secret, call_delay=runtime.twitch_call_delay
            )
            watchers.append(
                TwitchChecker(
                    self._store,
                    twitch,
                    self.registry,
                    resolver,
                    ledger,
                    dispatcher,
                    interval=runtime.twitch_interval,
                    feed_timeout=runtime.feed_timeout,
                )
            )
        else:
            logger.info("Ключи Twitch не заданы, проверка трансляций отключена")
        if self._twitter_bearer:
            twitter = TwitterClient(
                session, self._twitter_bearer, call_delay=runtime.twitter_call_delay
            )
            watchers.append(
                TwitterChecker(
                    self._store,
                    twitter,
                    self.registry,
                    resolver,
                    ledger,
                    dispatcher,
                    interval=runtime.twitter_interval,
                    feed_timeout=runtime.feed_timeout,
                )
            )
        else:
            logger.info("Токен Twitter не задан, проверка ленты отключена")
        return watchers

    async def track(
        self,
        platform: str,
        name: str,
        *,
        channel_id: str,
        guild_id: str | None,
        user_id: str,
    ) -> TrackResult:
        """Resolve ``name`` on the platform and start delivering it to a channel."""

        async with aiohttp.ClientSession() as session:
            if platform == TWITCH:
                if self._twitch_credentials is None:
                    raise TrackError("Не заданы ключи Twitch")
                client_id, client_secret = self._twitch_credentials
                result = await TwitchClient(session, client_id, client_secret).lookup_user(name)
                if isinstance(result, Err):
                    raise TrackError(_lookup_message(platform, name, result))
                external_id, display_name = result.value.id, result.value.login
            elif platform == TWITTER:
                if not self._twitter_bearer:
                    raise TrackError("Не задан токен Twitter")
                result = await TwitterClient(session, self._twitter_bearer).lookup_user(name)
                if isinstance(result, Err):
                    raise TrackError(_lookup_message(platform, name, result))
                external_id, display_name = result.value.id, result.value.username
            else:
                raise TrackError(f"Неизвестная платформа: {platform}")
        return self.registry.track(
            platform,
            external_id,
            display_name,
            channel_id=channel_id,
            guild_id=guild_id,
            user_id=user_id,
        )

    def untrack(self, platform: str, name: str, channel_id: str) -> None:
        feed = self.find_feed(platform, name)
        if feed is None or not self.registry.untrack(platform, feed.external_id, channel_id):
            raise TrackError(f"Канал {channel_id} не отслеживает {platform}/{name}")

    def find_feed(self, platform: str, name: str) -> Feed | None:
        """Find a tracked feed by external id or (case-insensitive) display name."""

        feed = self._store.find_feed(platform, name)
        if feed is not None:
            return feed
        wanted = name.strip().lstrip("@").lower()
        for candidate in self._store.list_feeds(platform):
            if candidate.display_name.lower() == wanted:
                return candidate
        return None

    def close(self) -> None:
        self._store.close()

    async def _supervise(
        self,
        name: str,
        factory: Callable[[], Awaitable[None]],
        *,
        retry_delay: float = 5.0,
    ) -> None:
        while True:
            try:
                await factory()
            except asyncio.CancelledError:
                logger.info("Задача %s остановлена", name)
                raise
            except Exception:
                logger.exception("Задача %s завершилась с ошибкой", name)
            else:
                logger.warning("Задача %s завершилась неожиданно, будет перезапущена", name)
            await asyncio.sleep(retry_delay)


def _lookup_message(platform: str, name: str, result: Err) -> str:
    if result.kind is ErrorKind.NOT_FOUND:
        return f"{platform}: пользователь {name} не найден"
    return f"{platform}: не удалось найти {name} ({result.error})"
