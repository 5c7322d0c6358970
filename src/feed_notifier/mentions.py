"""Role and text mentions attached to notifications."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from .discord import DiscordClient
from .errors import Err, ErrorKind
from .models import Target
from .store import UnitOfWork

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Mention:
    role_id: str | None = None
    text: str | None = None

    def render(self) -> str:
        parts = []
        if self.role_id:
            parts.append(f"<@&{self.role_id}>")
        if self.text:
            parts.append(self.text)
        return " ".join(parts)


async def resolve_mention(
    uow: UnitOfWork,
    discord: DiscordClient,
    target: Target,
    *,
    enabled: bool,
    now: datetime,
    cooldown: timedelta | None = None,
    allow_role: bool = True,
) -> Mention | None:
    """Work out the mention content for one notification to ``target``.

    ``cooldown`` applies to recurring events: the role is pinged at most once
    per cooldown window. A role deleted upstream is dropped from the config,
    the whole config is dropped when it had no text.
    """

    if not enabled:
        return None
    config = uow.store.get_mention(target.id)
    if config is None:
        return None

    role_id: str | None = None
    if config.role_id and target.guild_id:
        result = await discord.get_role(target.guild_id, config.role_id)
        if isinstance(result, Err):
            if result.kind is ErrorKind.NOT_FOUND:
                if config.text:
                    uow.store.clear_mention_role(target.id)
                    logger.info(
                        "Роль %s удалена в Discord, упоминание канала %s оставлено без роли",
                        config.role_id,
                        target.channel_id,
                    )
                else:
                    uow.store.delete_mention(target.id)
                    logger.info(
                        "Роль %s удалена в Discord, упоминание канала %s удалено",
                        config.role_id,
                        target.channel_id,
                    )
        else:
            role_id = config.role_id

    if role_id and not allow_role:
        role_id = None
    if role_id and cooldown is not None and config.last_mention is not None:
        if now - config.last_mention <= cooldown:
            role_id = None

    if not role_id and not config.text:
        return None
    return Mention(role_id=role_id, text=config.text)


def mark_mentioned(uow: UnitOfWork, target: Target, mention: Mention | None, now: datetime) -> None:
    if mention is not None and mention.role_id:
        uow.store.set_last_mention(target.id, now)
