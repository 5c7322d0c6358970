"""Delivery of live/ended/post events to resolved Discord targets."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta
from typing import Any, TypeVar

from .discord import DiscordClient
from .errors import Err, ErrorKind, Ok, Result, timeout_error
from .formatting import (
    post_content,
    post_embed,
    sensitive_notice,
    statistics_embed,
    stream_embed,
)
from .ledger import POST, STREAM, NotificationLedger
from .mentions import mark_mentioned, resolve_mention
from .models import (
    MessageRef,
    NotificationRecord,
    SocialPost,
    SocialUser,
    StreamInfo,
    StreamUser,
    Target,
)
from .registry import FeedRegistry
from .resolver import lookup_channel
from .store import UnitOfWork
from .utils import utcnow

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

# role pings are skipped for events noticed later than this
_MENTION_WINDOW = timedelta(minutes=15)


class NotificationDispatcher:
    """Create, edit or delete Discord notifications for one feed event."""

    def __init__(
        self,
        discord: DiscordClient,
        registry: FeedRegistry,
        ledger: NotificationLedger,
        *,
        timeout: float = 6.0,
        mention_cooldown: float = 6 * 3600.0,
        now: Callable[[], datetime] = utcnow,
    ):
        self._discord = discord
        self._registry = registry
        self._ledger = ledger
        self._timeout = timeout
        self._cooldown = timedelta(seconds=mention_cooldown)
        self._now = now

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------
    async def stream_live(
        self,
        uow: UnitOfWork,
        targets: Sequence[Target],
        user: StreamUser,
        stream: StreamInfo,
        *,
        changed: bool,
        game_art: str | None = None,
    ) -> None:
        now = self._now()

        async def notify(target: Target) -> None:
            settings = uow.features(target.channel_id).streams
            embed = stream_embed(
                user, stream, settings, now=now, color=target.embed_color, game_art=game_art
            )
            existing = self._ledger.find_for_target(uow, target, kind=STREAM)
            if existing is None:
                await self._post_stream(uow, target, stream, embed, now)
                return
            if existing.deleted or not changed:
                return
            result = await self._call(
                "edit", lambda: self._discord.edit_message(existing.message, embeds=[embed])
            )
            if isinstance(result, Err):
                self._edit_failed(uow, existing, result)

        await self._each_target(uow, targets, notify)

    async def _post_stream(
        self,
        uow: UnitOfWork,
        target: Target,
        stream: StreamInfo,
        embed: dict[str, Any],
        now: datetime,
    ) -> None:
        settings = uow.features(target.channel_id).streams
        mention = None
        if target.guild_id is not None and now - stream.started_at <= _MENTION_WINDOW:
            mention = await resolve_mention(
                uow,
                self._discord,
                target,
                enabled=settings.mention_roles,
                now=now,
                cooldown=self._cooldown,
            )
        content = mention.render() if mention is not None else None
        result = await self._call(
            "send",
            lambda: self._discord.send_message(target.channel_id, content, embeds=[embed]),
        )
        if isinstance(result, Err):
            self._send_failed(uow, target, result)
            return
        message = result.value
        self._ledger.record(uow, target, stream.id, message, kind=STREAM)
        mark_mentioned(uow, target, mention, now)
        if settings.pin_active:
            await self._call("pin", lambda: self._discord.pin_message(message))
        if settings.publish:
            await self._publish(uow, message)

    async def stream_ended(self, uow: UnitOfWork, user: StreamUser) -> None:
        records = self._ledger.for_feed(uow, kind=STREAM)
        event = self._ledger.stream_event(uow)
        now = self._now()

        async def finish(record: NotificationRecord) -> None:
            try:
                if record.deleted:
                    return
                message = record.message
                if event is None:
                    # statistics lost (e.g. downtime), abandon the notification
                    await self._call("delete", lambda: self._discord.delete_message(message))
                    return
                settings = uow.features(message.channel_id).streams
                if settings.summaries:
                    embed = statistics_embed(
                        user.display_name,
                        user.url,
                        event,
                        settings,
                        now=now,
                        profile_image=user.profile_image,
                    )
                    await self._call(
                        "edit", lambda: self._discord.edit_message(message, embeds=[embed])
                    )
                    if settings.pin_active:
                        await self._call("unpin", lambda: self._discord.unpin_message(message))
                else:
                    await self._call("delete", lambda: self._discord.delete_message(message))
            finally:
                self._ledger.delete(uow, record)

        await self._gather_isolated(uow, [finish(record) for record in records])
        self._ledger.close_stream(uow)

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------
    async def post(
        self,
        uow: UnitOfWork,
        targets: Sequence[Target],
        user: SocialUser,
        post: SocialPost,
    ) -> None:
        now = self._now()
        outdated = now - post.created_at > _MENTION_WINDOW

        async def notify(target: Target) -> None:
            settings = uow.features(target.channel_id).posts
            if not settings.allows(post.kind):
                return
            if self._ledger.find_for_target(uow, target, kind=POST, session_id=post.id):
                return

            if post.sensitive and target.guild_id is not None:
                channel = await lookup_channel(uow, self._discord, target.channel_id)
                if not (isinstance(channel, Ok) and channel.value.nsfw):
                    notice = sensitive_notice(user, post)
                    result = await self._call(
                        "send",
                        lambda: self._discord.send_message(target.channel_id, embeds=[notice]),
                    )
                    if isinstance(result, Err):
                        self._send_failed(uow, target, result)
                    else:
                        self._ledger.record(uow, target, post.id, result.value, kind=POST)
                    return

            if settings.media_only and not any(media.url for media in post.media):
                return

            mention = await resolve_mention(
                uow,
                self._discord,
                target,
                enabled=settings.mentions(post.kind),
                now=now,
                allow_role=not outdated,
            )
            content = post_content(user, post, mention)
            embed = post_embed(
                user,
                post,
                color=target.embed_color,
                skipped_ping=outdated and mention is not None,
            )
            result = await self._call(
                "send",
                lambda: self._discord.send_message(target.channel_id, content, embeds=[embed]),
            )
            if isinstance(result, Err):
                self._send_failed(uow, target, result)
                return
            self._ledger.record(uow, target, post.id, result.value, kind=POST)
            mark_mentioned(uow, target, mention, now)
            if settings.publish:
                await self._publish(uow, result.value)

        await self._each_target(uow, targets, notify)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _publish(self, uow: UnitOfWork, message: MessageRef) -> None:
        channel = await lookup_channel(uow, self._discord, message.channel_id)
        if isinstance(channel, Ok) and channel.value.is_news:
            await self._call("crosspost", lambda: self._discord.crosspost_message(message))

    def _send_failed(self, uow: UnitOfWork, target: Target, result: Err) -> None:
        feed = uow.feed
        if result.kind is ErrorKind.FORBIDDEN:
            logger.warning(
                "Нет прав на отправку в канал %s, отслеживание %s отключено в канале",
                target.channel_id,
                feed.platform,
            )
            with uow.atomic():
                uow.store.set_tracking_enabled(target.channel_id, feed.platform, False)
                self._registry.delete_target(uow, target)
            uow.forget_features(target.channel_id)
            return
        logger.warning(
            "Не удалось отправить уведомление %s/%s в канал %s: %s",
            feed.platform,
            feed.display_name or feed.external_id,
            target.channel_id,
            result.error,
        )

    def _edit_failed(self, uow: UnitOfWork, record: NotificationRecord, result: Err) -> None:
        if result.kind in (ErrorKind.NOT_FOUND, ErrorKind.FORBIDDEN):
            logger.info(
                "Уведомление %s в канале %s недоступно, помечено удалённым",
                record.message.message_id,
                record.message.channel_id,
            )
            self._ledger.mark_deleted(uow, record)
            return
        logger.warning(
            "Не удалось обновить уведомление %s: %s", record.message.message_id, result.error
        )

    async def _call(self, action: str, factory: Callable[[], Awaitable[Result[_T]]]) -> Result[_T]:
        try:
            return await asyncio.wait_for(factory(), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Действие Discord %s не завершилось за %.1f с", action, self._timeout)
            return timeout_error(action)

    async def _each_target(
        self,
        uow: UnitOfWork,
        targets: Sequence[Target],
        handler: Callable[[Target], Awaitable[None]],
    ) -> None:
        await self._gather_isolated(uow, [handler(target) for target in targets])

    async def _gather_isolated(self, uow: UnitOfWork, coroutines: list[Awaitable[None]]) -> None:
        results = await asyncio.gather(*coroutines, return_exceptions=True)
        for outcome in results:
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                logger.error(
                    "Ошибка при доставке уведомления %s/%s",
                    uow.feed.platform,
                    uow.feed.display_name or uow.feed.external_id,
                    exc_info=outcome,
                )
