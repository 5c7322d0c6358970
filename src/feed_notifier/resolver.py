"""Active delivery targets of a feed."""

from __future__ import annotations

import logging

from .discord import DiscordClient
from .errors import Err, ErrorKind, Result
from .models import ChannelInfo, Target
from .registry import FeedRegistry
from .store import UnitOfWork

logger = logging.getLogger(__name__)


async def lookup_channel(
    uow: UnitOfWork, discord: DiscordClient, channel_id: str
) -> Result[ChannelInfo]:
    """Channel lookup shared by every component within one feed task."""

    return await uow.memo.get(("channel", channel_id), lambda: discord.get_channel(channel_id))


class TargetResolver:
    """Computes which targets of a feed should receive notifications."""

    def __init__(self, discord: DiscordClient, registry: FeedRegistry):
        self._discord = discord
        self._registry = registry

    async def resolve(self, uow: UnitOfWork) -> list[Target] | None:
        """Return active targets, or ``None`` when the feed was untracked.

        An empty list means the feed stays tracked but nothing should be
        delivered right now.
        """

        feed = uow.feed
        reachable: list[Target] = []
        for target in self._registry.targets(uow):
            if target.is_dm:
                reachable.append(target)
                continue
            result = await lookup_channel(uow, self._discord, target.channel_id)
            if not isinstance(result, Err):
                reachable.append(target)
                continue
            if result.kind is ErrorKind.UNAUTHORIZED:
                logger.error(
                    "Discord отклонил авторизацию при проверке канала %s, проход пропущен",
                    target.channel_id,
                )
                return []
            if result.kind is ErrorKind.NOT_FOUND:
                logger.info(
                    "Отслеживание %s/%s в канале %s удалено: канал не найден",
                    feed.platform,
                    feed.display_name or feed.external_id,
                    target.channel_id,
                )
                self._registry.delete_target(uow, target)
                continue
            logger.warning(
                "Канал %s временно недоступен (%s), пропускаем", target.channel_id, result.error
            )

        if not reachable and self._registry.count_targets(uow) == 0:
            logger.info(
                "У %s/%s не осталось целей, отслеживание прекращается",
                feed.platform,
                feed.display_name or feed.external_id,
            )
            self._registry.delete_feed(uow)
            return None

        # disabled channels are skipped but keep their targets
        return [
            target
            for target in reachable
            if target.is_dm or uow.store.is_tracking_enabled(target.channel_id, feed.platform)
        ]
