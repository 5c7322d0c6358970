"""Data models used across the notification engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

TWITCH = "twitch"
TWITTER = "twitter"
PLATFORMS: tuple[str, ...] = (TWITCH, TWITTER)


@dataclass(slots=True)
class Feed:
    """One tracked external account or channel."""

    id: int
    platform: str
    external_id: str
    display_name: str
    last_item_id: str | None = None
    added_at: datetime | None = None


@dataclass(slots=True)
class Target:
    """A Discord channel subscribed to a feed."""

    id: int
    feed_id: int
    channel_id: str
    guild_id: str | None
    tracker_user_id: str
    embed_color: int | None = None
    added_at: datetime | None = None

    @property
    def is_dm(self) -> bool:
        return self.guild_id is None


@dataclass(slots=True)
class MentionConfig:
    """Optional role/text mention attached to a target."""

    target_id: int
    role_id: str | None = None
    text: str | None = None
    last_mention: datetime | None = None


@dataclass(frozen=True, slots=True)
class MessageRef:
    channel_id: str
    message_id: str


@dataclass(slots=True)
class NotificationRecord:
    """Link between an upstream live/post session and its Discord message."""

    id: int
    target_id: int
    feed_id: int
    session_id: str
    kind: str
    message: MessageRef
    deleted: bool = False
    created_at: datetime | None = None


@dataclass(slots=True)
class StreamEvent:
    """Statistics of the live session currently tracked for a stream feed."""

    feed_id: int
    session_id: str
    started_at: datetime
    peak_viewers: int
    average_viewers: int
    uptime_ticks: int
    last_title: str
    last_game: str


@dataclass(slots=True)
class StreamSettings:
    """Per-channel behaviour of stream notifications."""

    summaries: bool = True
    thumbnails: bool = True
    end_title: bool = True
    end_game: bool = True
    peak_viewers: bool = True
    average_viewers: bool = True
    mention_roles: bool = True
    pin_active: bool = False
    publish: bool = False


@dataclass(slots=True)
class PostSettings:
    """Per-channel behaviour of social post notifications."""

    tweets: bool = True
    retweets: bool = False
    replies: bool = False
    quotes: bool = True
    media_only: bool = False
    mention_roles: bool = True
    mention_tweets: bool = True
    mention_retweets: bool = False
    mention_replies: bool = False
    mention_quotes: bool = False
    publish: bool = False

    def allows(self, kind: str) -> bool:
        return bool(getattr(self, _KIND_OPTIONS.get(kind, "tweets")))

    def mentions(self, kind: str) -> bool:
        if not self.mention_roles:
            return False
        return bool(getattr(self, "mention_" + _KIND_OPTIONS.get(kind, "tweets")))


_KIND_OPTIONS = {
    "post": "tweets",
    "retweet": "retweets",
    "reply": "replies",
    "quote": "quotes",
}


@dataclass(slots=True)
class ChannelFeatures:
    """Feature flags and settings of one Discord channel."""

    channel_id: str
    enabled: dict[str, bool] = field(default_factory=dict)
    streams: StreamSettings = field(default_factory=StreamSettings)
    posts: PostSettings = field(default_factory=PostSettings)

    def tracking_enabled(self, platform: str) -> bool:
        return self.enabled.get(platform, True)


@dataclass(slots=True)
class RuntimeOptions:
    """Tunable behaviour of the polling loops."""

    twitch_interval: float = 60.0
    twitter_interval: float = 60.0
    twitch_call_delay: float = 0.4
    twitter_call_delay: float = 1.1
    discord_timeout: float = 6.0
    feed_timeout: float = 60.0
    mention_cooldown: float = 6 * 3600.0


@dataclass(slots=True)
class ChannelInfo:
    """Basic channel metadata from the Discord API."""

    id: str
    type: int
    guild_id: str | None = None
    name: str | None = None
    nsfw: bool = False

    @property
    def is_news(self) -> bool:
        return self.type == 5


@dataclass(slots=True)
class StreamUser:
    id: str
    login: str
    display_name: str
    profile_image: str | None = None

    @property
    def url(self) -> str:
        return f"https://twitch.tv/{self.login}"


@dataclass(slots=True)
class StreamInfo:
    """A live stream as reported by the platform."""

    id: str
    user_id: str
    user_login: str
    title: str
    game_id: str
    game_name: str
    viewers: int
    started_at: datetime
    thumbnail_url: str | None = None


@dataclass(slots=True)
class SocialUser:
    id: str
    username: str
    name: str
    profile_image: str | None = None

    @property
    def url(self) -> str:
        return f"https://twitter.com/{self.username}"


@dataclass(slots=True)
class PostMedia:
    type: str
    url: str | None = None


@dataclass(slots=True)
class SocialPost:
    """A single post from a social feed."""

    id: str
    author_id: str
    text: str
    created_at: datetime
    kind: str = "post"
    sensitive: bool = False
    media: Sequence[PostMedia] = ()
    reference_author: SocialUser | None = None

    @property
    def numeric_id(self) -> int:
        return int(self.id) if self.id.isdigit() else 0
