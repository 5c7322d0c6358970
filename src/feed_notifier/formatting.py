"""Discord message and embed rendering for notifications."""

from __future__ import annotations

import html
from datetime import datetime, timedelta
from typing import Any

from .mentions import Mention
from .models import (
    SocialPost,
    SocialUser,
    StreamEvent,
    StreamInfo,
    StreamSettings,
    StreamUser,
)

Embed = dict[str, Any]

TWITCH_COLOR = 0x6441A4
TWITTER_COLOR = 1942002
ENDED_COLOR = 3941986
NOTICE_COLOR = 0xF4A261

_DESCRIPTION_LIMIT = 4096
_TITLE_LIMIT = 256
_ELLIPSIS = "…"

_POST_ACTIONS = {
    "retweet": "retweeted \U0001F501",
    "reply": "replied to a Tweet from **@{ref}** \U0001F4AC",
    "quote": "quoted a Tweet from **@{ref}** \U0001F5E8",
}


def truncate(text: str, limit: int, ellipsis: str = _ELLIPSIS) -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - len(ellipsis))].rstrip() + ellipsis


def escape_markdown(text: str) -> str:
    escaped = html.unescape(text)
    for symbol in ("*", "#", "~", "|", "`"):
        escaped = escaped.replace(symbol, "\\" + symbol)
    return escaped.replace("_ ", "\\_ ").replace(" _", " \\_")


def format_uptime(delta: timedelta) -> str:
    """``H:MM:SS`` for a running stream."""

    seconds = max(0, int(delta.total_seconds()))
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours}:{minutes:02d}:{seconds:02d}"


def format_duration(delta: timedelta) -> str:
    """Human readable duration, e.g. ``2 hours, 5 minutes``."""

    seconds = max(0, int(delta.total_seconds()))
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)
    parts = []
    for value, unit in ((days, "day"), (hours, "hour"), (minutes, "minute")):
        if value:
            parts.append(f"{value} {unit}{'' if value == 1 else 's'}")
    if not parts:
        parts.append(f"{seconds} second{'' if seconds == 1 else 's'}")
    return ", ".join(parts)


def stream_thumbnail(stream: StreamInfo, now: datetime) -> str | None:
    if not stream.thumbnail_url:
        return None
    url = stream.thumbnail_url.replace("{width}", "1280").replace("{height}", "720")
    # cache-bust, Discord keeps serving the first image otherwise
    return f"{url}?t={int(now.timestamp())}"


def stream_embed(
    user: StreamUser,
    stream: StreamInfo,
    settings: StreamSettings,
    *,
    now: datetime,
    color: int | None = None,
    game_art: str | None = None,
) -> Embed:
    game = stream.game_name or "Unknown game"
    viewers = f"{stream.viewers} viewer{'' if stream.viewers == 1 else 's'}"
    embed: Embed = {
        "author": {
            "name": truncate(f"{user.display_name} playing {game} for {viewers}", _TITLE_LIMIT),
            "url": user.url,
        },
        "description": truncate(
            f"[{escape_markdown(stream.title) or user.url}]({user.url})", _DESCRIPTION_LIMIT
        ),
        "color": color if color is not None else TWITCH_COLOR,
        "footer": {"text": f"Uptime: {format_uptime(now - stream.started_at)} - Live since "},
        "timestamp": stream.started_at.isoformat(),
    }
    if user.profile_image:
        embed["author"]["icon_url"] = user.profile_image
    if game_art:
        embed["thumbnail"] = {"url": game_art}
    if settings.thumbnails:
        image = stream_thumbnail(stream, now)
        if image:
            embed["image"] = {"url": image}
    return embed


def statistics_embed(
    display_name: str,
    url: str,
    event: StreamEvent,
    settings: StreamSettings,
    *,
    now: datetime,
    profile_image: str | None = None,
) -> Embed:
    lines: list[str] = []
    if settings.end_title and event.last_title:
        lines.append(f"Last stream title: {escape_markdown(event.last_title)}")
    if settings.end_game and event.last_game:
        lines.append(f"Last game played: {event.last_game}")
    if settings.peak_viewers:
        lines.append(f"Peak viewers: {event.peak_viewers}")
    if settings.average_viewers:
        lines.append(f"Average viewers: {event.average_viewers}")

    embed: Embed = {
        "author": {
            "name": truncate(
                f"{display_name} was live for {format_duration(now - event.started_at)}",
                _TITLE_LIMIT,
            ),
            "url": url,
        },
        "color": ENDED_COLOR,
        "footer": {"text": "Stream ended "},
        "timestamp": now.isoformat(),
    }
    if profile_image:
        embed["author"]["icon_url"] = profile_image
    if lines:
        embed["description"] = truncate("\n".join(lines), _DESCRIPTION_LIMIT)
    return embed


def post_action(post: SocialPost) -> str:
    template = _POST_ACTIONS.get(post.kind)
    if template is None:
        return "posted a new Tweet"
    reference = post.reference_author.username if post.reference_author else "unknown"
    return template.format(ref=reference)


def post_url(user: SocialUser, post: SocialPost) -> str:
    return f"https://twitter.com/{user.username}/status/{post.id}"


def post_content(
    user: SocialUser,
    post: SocialPost,
    mention: Mention | None,
) -> str:
    prefix = mention.render() + " " if mention is not None else ""
    timestamp = f"<t:{int(post.created_at.timestamp())}:R>"
    return f"{prefix}**@{user.username}** {post_action(post)} {timestamp}: {post_url(user, post)}"


def post_embed(
    user: SocialUser,
    post: SocialPost,
    *,
    color: int | None = None,
    skipped_ping: bool = False,
) -> Embed:
    author = post.reference_author if post.kind == "retweet" and post.reference_author else user
    embed: Embed = {
        "author": {
            "name": truncate(f"{author.name} (@{author.username})", _TITLE_LIMIT),
            "url": author.url,
        },
        "description": truncate(html.unescape(post.text), _DESCRIPTION_LIMIT),
        "color": color if color is not None else TWITTER_COLOR,
    }
    if author.profile_image:
        embed["author"]["icon_url"] = author.profile_image

    footer: list[str] = []
    first = post.media[0] if post.media else None
    if first is not None and first.type in {"video", "animated_gif"}:
        footer.append("(Open on Twitter to view video)")
    elif len(post.media) > 1:
        footer.append(f"(Open on Twitter to view {len(post.media)} images)")
    if skipped_ping:
        footer.append("Skipping ping for old Tweet.")
    if footer:
        embed["footer"] = {"text": "\n".join(footer)}
    if first is not None and first.url:
        embed["image"] = {"url": first.url}
    return embed


def sensitive_notice(user: SocialUser, post: SocialPost) -> Embed:
    return {
        "description": (
            f"[**@{user.username}**]({user.url}) {post_action(post)} "
            "which may contain sensitive content."
        ),
        "color": NOTICE_COLOR,
    }
