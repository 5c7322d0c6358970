"""SQLite backed storage for tracked feeds, targets and notifications."""

from __future__ import annotations

import sqlite3
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, TypeVar

from .models import (
    ChannelFeatures,
    Feed,
    MentionConfig,
    MessageRef,
    NotificationRecord,
    PostSettings,
    RuntimeOptions,
    StreamEvent,
    StreamSettings,
    Target,
    PLATFORMS,
)
from .utils import PassMemo, parse_bool, parse_delay_setting, parse_timestamp, utcnow

_DB_PRAGMA = "PRAGMA journal_mode=WAL;" "PRAGMA synchronous=NORMAL;" "PRAGMA foreign_keys=ON;"

_Settings = TypeVar("_Settings", StreamSettings, PostSettings)


class TrackerStore:
    """Persisted feeds, targets, channel features and notification state."""

    def __init__(self, path: Path):
        self._path = path
        self._conn = sqlite3.connect(self._path)
        self._conn.row_factory = sqlite3.Row
        self._depth = 0
        self._setup()

    # ------------------------------------------------------------------
    # Schema initialisation
    # ------------------------------------------------------------------
    def _setup(self) -> None:
        with closing(self._conn.cursor()) as cur:
            for statement in _DB_PRAGMA.split(";"):
                if statement.strip():
                    cur.execute(statement)
            cur.executescript(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS feeds (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    platform TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    display_name TEXT DEFAULT '',
                    last_item_id TEXT,
                    added_at TEXT,
                    UNIQUE(platform, external_id)
                );

                CREATE TABLE IF NOT EXISTS targets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    feed_id INTEGER NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
                    channel_id TEXT NOT NULL,
                    guild_id TEXT,
                    tracker_user_id TEXT NOT NULL,
                    embed_color INTEGER,
                    added_at TEXT,
                    UNIQUE(feed_id, channel_id)
                );

                CREATE TABLE IF NOT EXISTS mentions (
                    target_id INTEGER PRIMARY KEY REFERENCES targets(id) ON DELETE CASCADE,
                    role_id TEXT,
                    mention_text TEXT,
                    last_mention TEXT
                );

                CREATE TABLE IF NOT EXISTS channel_options (
                    channel_id TEXT NOT NULL,
                    option_key TEXT NOT NULL,
                    option_value TEXT NOT NULL,
                    PRIMARY KEY (channel_id, option_key)
                );

                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    target_id INTEGER NOT NULL REFERENCES targets(id) ON DELETE CASCADE,
                    feed_id INTEGER NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
                    session_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    channel_id TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    deleted INTEGER DEFAULT 0,
                    created_at TEXT,
                    UNIQUE(target_id, session_id)
                );

                CREATE TABLE IF NOT EXISTS stream_events (
                    feed_id INTEGER PRIMARY KEY REFERENCES feeds(id) ON DELETE CASCADE,
                    session_id TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    peak_viewers INTEGER DEFAULT 0,
                    average_viewers INTEGER DEFAULT 0,
                    uptime_ticks INTEGER DEFAULT 0,
                    last_title TEXT DEFAULT '',
                    last_game TEXT DEFAULT ''
                );
                """
            )
            self._conn.commit()

    def _commit(self) -> None:
        if self._depth == 0:
            self._conn.commit()

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Group several writes into one SQLite transaction."""

        self._depth += 1
        try:
            yield
        except BaseException:
            self._depth -= 1
            if self._depth == 0:
                self._conn.rollback()
            raise
        self._depth -= 1
        if self._depth == 0:
            self._conn.commit()

    def unit_of_work(self, feed: Feed) -> "UnitOfWork":
        return UnitOfWork(self, feed)

    # ------------------------------------------------------------------
    # Basic settings
    # ------------------------------------------------------------------
    def set_setting(self, key: str, value: str) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "INSERT INTO settings(key, value) VALUES(?, ?)"
                " ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, value),
            )
            self._commit()

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT value FROM settings WHERE key=?", (key,))
            row = cur.fetchone()
        return row["value"] if row else default

    def delete_setting(self, key: str) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("DELETE FROM settings WHERE key=?", (key,))
            self._commit()

    def iter_settings(self, prefix: str | None = None) -> Iterator[tuple[str, str]]:
        query = "SELECT key, value FROM settings"
        params: tuple[str, ...] = ()
        if prefix:
            query += " WHERE key LIKE ?"
            params = (f"{prefix}%",)
        with closing(self._conn.cursor()) as cur:
            cur.execute(query, params)
            rows = cur.fetchall()
        for row in rows:
            yield str(row["key"]), str(row["value"])

    def load_runtime_options(self) -> RuntimeOptions:
        defaults = RuntimeOptions()

        def _float(key: str, default: float) -> float:
            value = self.get_setting(key)
            if value is None:
                return default
            try:
                return max(0.0, float(value))
            except ValueError:
                return default

        return RuntimeOptions(
            twitch_interval=_float("runtime.twitch.interval", defaults.twitch_interval),
            twitter_interval=_float("runtime.twitter.interval", defaults.twitter_interval),
            twitch_call_delay=parse_delay_setting(
                self.get_setting("runtime.twitch.call_delay"), defaults.twitch_call_delay
            ),
            twitter_call_delay=parse_delay_setting(
                self.get_setting("runtime.twitter.call_delay"), defaults.twitter_call_delay
            ),
            discord_timeout=_float("runtime.discord_timeout", defaults.discord_timeout),
            feed_timeout=_float("runtime.feed_timeout", defaults.feed_timeout),
            mention_cooldown=_float("runtime.mention_cooldown", defaults.mention_cooldown),
        )

    # ------------------------------------------------------------------
    # Feeds
    # ------------------------------------------------------------------
    def add_feed(self, platform: str, external_id: str, display_name: str) -> Feed:
        if platform not in PLATFORMS:
            raise ValueError(f"Unsupported platform: {platform}")
        existing = self.find_feed(platform, external_id)
        if existing is not None:
            return existing
        timestamp = utcnow().isoformat()
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "INSERT INTO feeds(platform, external_id, display_name, added_at)"
                " VALUES(?, ?, ?, ?)",
                (platform, external_id, display_name, timestamp),
            )
            feed_id = int(cur.lastrowid)
            self._commit()
        return Feed(
            id=feed_id,
            platform=platform,
            external_id=external_id,
            display_name=display_name,
            added_at=parse_timestamp(timestamp),
        )

    def get_feed(self, feed_id: int) -> Feed | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT * FROM feeds WHERE id=?", (feed_id,))
            row = cur.fetchone()
        return _feed_from_row(row) if row else None

    def find_feed(self, platform: str, external_id: str) -> Feed | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "SELECT * FROM feeds WHERE platform=? AND external_id=?",
                (platform, external_id),
            )
            row = cur.fetchone()
        return _feed_from_row(row) if row else None

    def list_feeds(self, platform: str | None = None) -> list[Feed]:
        query = "SELECT * FROM feeds"
        params: tuple[str, ...] = ()
        if platform is not None:
            query += " WHERE platform=?"
            params = (platform,)
        query += " ORDER BY id"
        with closing(self._conn.cursor()) as cur:
            cur.execute(query, params)
            rows = cur.fetchall()
        return [_feed_from_row(row) for row in rows]

    def delete_feed(self, feed_id: int) -> bool:
        with closing(self._conn.cursor()) as cur:
            cur.execute("DELETE FROM feeds WHERE id=?", (feed_id,))
            deleted = cur.rowcount > 0
            self._commit()
        return deleted

    def set_feed_cursor(self, feed_id: int, item_id: str | None) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("UPDATE feeds SET last_item_id=? WHERE id=?", (item_id, feed_id))
            self._commit()

    def set_feed_name(self, feed_id: int, display_name: str) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("UPDATE feeds SET display_name=? WHERE id=?", (display_name, feed_id))
            self._commit()

    # ------------------------------------------------------------------
    # Targets
    # ------------------------------------------------------------------
    def add_target(
        self,
        feed_id: int,
        channel_id: str,
        guild_id: str | None,
        tracker_user_id: str,
    ) -> Target | None:
        """Insert a target, returning ``None`` when the channel already tracks the feed."""

        timestamp = utcnow().isoformat()
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "INSERT INTO targets(feed_id, channel_id, guild_id, tracker_user_id, added_at)"
                " VALUES(?, ?, ?, ?, ?) ON CONFLICT(feed_id, channel_id) DO NOTHING",
                (feed_id, channel_id, guild_id, tracker_user_id, timestamp),
            )
            inserted = cur.rowcount > 0
            target_id = int(cur.lastrowid) if inserted else None
            self._commit()
        if target_id is None:
            return None
        return Target(
            id=target_id,
            feed_id=feed_id,
            channel_id=channel_id,
            guild_id=guild_id,
            tracker_user_id=tracker_user_id,
            added_at=parse_timestamp(timestamp),
        )

    def get_target(self, target_id: int) -> Target | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT * FROM targets WHERE id=?", (target_id,))
            row = cur.fetchone()
        return _target_from_row(row) if row else None

    def find_target(self, feed_id: int, channel_id: str) -> Target | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "SELECT * FROM targets WHERE feed_id=? AND channel_id=?",
                (feed_id, channel_id),
            )
            row = cur.fetchone()
        return _target_from_row(row) if row else None

    def list_targets(self, feed_id: int) -> list[Target]:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT * FROM targets WHERE feed_id=? ORDER BY id", (feed_id,))
            rows = cur.fetchall()
        return [_target_from_row(row) for row in rows]

    def count_targets(self, feed_id: int) -> int:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT COUNT(*) FROM targets WHERE feed_id=?", (feed_id,))
            row = cur.fetchone()
        return int(row[0]) if row else 0

    def delete_target(self, target_id: int) -> bool:
        with closing(self._conn.cursor()) as cur:
            cur.execute("DELETE FROM targets WHERE id=?", (target_id,))
            deleted = cur.rowcount > 0
            self._commit()
        return deleted

    def set_target_color(self, target_id: int, color: int | None) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("UPDATE targets SET embed_color=? WHERE id=?", (color, target_id))
            self._commit()

    # ------------------------------------------------------------------
    # Mentions
    # ------------------------------------------------------------------
    def get_mention(self, target_id: int) -> MentionConfig | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT * FROM mentions WHERE target_id=?", (target_id,))
            row = cur.fetchone()
        if row is None:
            return None
        return MentionConfig(
            target_id=int(row["target_id"]),
            role_id=str(row["role_id"]) if row["role_id"] else None,
            text=str(row["mention_text"]) if row["mention_text"] else None,
            last_mention=parse_timestamp(row["last_mention"]),
        )

    def set_mention(self, target_id: int, role_id: str | None, text: str | None) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "INSERT INTO mentions(target_id, role_id, mention_text) VALUES(?, ?, ?)"
                " ON CONFLICT(target_id) DO UPDATE SET role_id=excluded.role_id,"
                " mention_text=excluded.mention_text",
                (target_id, role_id, text),
            )
            self._commit()

    def clear_mention_role(self, target_id: int) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("UPDATE mentions SET role_id=NULL WHERE target_id=?", (target_id,))
            self._commit()

    def delete_mention(self, target_id: int) -> bool:
        with closing(self._conn.cursor()) as cur:
            cur.execute("DELETE FROM mentions WHERE target_id=?", (target_id,))
            deleted = cur.rowcount > 0
            self._commit()
        return deleted

    def set_last_mention(self, target_id: int, moment: datetime) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "UPDATE mentions SET last_mention=? WHERE target_id=?",
                (moment.isoformat(), target_id),
            )
            self._commit()

    # ------------------------------------------------------------------
    # Channel features
    # ------------------------------------------------------------------
    def set_channel_option(self, channel_id: str, option_key: str, option_value: str) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "INSERT INTO channel_options(channel_id, option_key, option_value)"
                " VALUES(?, ?, ?) ON CONFLICT(channel_id, option_key)"
                " DO UPDATE SET option_value=excluded.option_value",
                (channel_id, option_key, option_value),
            )
            self._commit()

    def delete_channel_option(self, channel_id: str, option_key: str) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "DELETE FROM channel_options WHERE channel_id=? AND option_key=?",
                (channel_id, option_key),
            )
            self._commit()

    def iter_channel_options(self, channel_id: str) -> Iterator[tuple[str, str]]:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "SELECT option_key, option_value FROM channel_options WHERE channel_id=?",
                (channel_id,),
            )
            rows = cur.fetchall()
        for row in rows:
            yield str(row["option_key"]), str(row["option_value"])

    def load_channel_features(self, channel_id: str) -> ChannelFeatures:
        options = dict(self.iter_channel_options(channel_id))
        enabled = {
            platform: parse_bool(options.get(f"{platform}.enabled"), True)
            for platform in PLATFORMS
        }
        return ChannelFeatures(
            channel_id=channel_id,
            enabled=enabled,
            streams=_settings_from_options(StreamSettings(), options, "streams."),
            posts=_settings_from_options(PostSettings(), options, "posts."),
        )

    def is_tracking_enabled(self, channel_id: str, platform: str) -> bool:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "SELECT option_value FROM channel_options WHERE channel_id=? AND option_key=?",
                (channel_id, f"{platform}.enabled"),
            )
            row = cur.fetchone()
        return parse_bool(row["option_value"] if row else None, True)

    def set_tracking_enabled(self, channel_id: str, platform: str, enabled: bool) -> None:
        self.set_channel_option(channel_id, f"{platform}.enabled", "true" if enabled else "false")

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def add_notification(
        self,
        target_id: int,
        feed_id: int,
        session_id: str,
        kind: str,
        message: MessageRef,
    ) -> NotificationRecord | None:
        timestamp = utcnow().isoformat()
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "INSERT INTO notifications(target_id, feed_id, session_id, kind,"
                " channel_id, message_id, deleted, created_at) VALUES(?, ?, ?, ?, ?, ?, 0, ?)"
                " ON CONFLICT(target_id, session_id) DO NOTHING",
                (
                    target_id,
                    feed_id,
                    session_id,
                    kind,
                    message.channel_id,
                    message.message_id,
                    timestamp,
                ),
            )
            inserted = cur.rowcount > 0
            record_id = int(cur.lastrowid) if inserted else None
            self._commit()
        if record_id is None:
            return None
        return NotificationRecord(
            id=record_id,
            target_id=target_id,
            feed_id=feed_id,
            session_id=session_id,
            kind=kind,
            message=message,
            deleted=False,
            created_at=parse_timestamp(timestamp),
        )

    def find_notification(
        self,
        target_id: int,
        *,
        kind: str,
        session_id: str | None = None,
    ) -> NotificationRecord | None:
        query = "SELECT * FROM notifications WHERE target_id=? AND kind=?"
        params: tuple[object, ...] = (target_id, kind)
        if session_id is not None:
            query += " AND session_id=?"
            params += (session_id,)
        query += " ORDER BY id LIMIT 1"
        with closing(self._conn.cursor()) as cur:
            cur.execute(query, params)
            row = cur.fetchone()
        return _notification_from_row(row) if row else None

    def list_notifications(self, feed_id: int, *, kind: str) -> list[NotificationRecord]:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "SELECT * FROM notifications WHERE feed_id=? AND kind=? ORDER BY id",
                (feed_id, kind),
            )
            rows = cur.fetchall()
        return [_notification_from_row(row) for row in rows]

    def set_notification_deleted(self, record_id: int) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("UPDATE notifications SET deleted=1 WHERE id=?", (record_id,))
            self._commit()

    def delete_notification(self, record_id: int) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("DELETE FROM notifications WHERE id=?", (record_id,))
            self._commit()

    def prune_notifications(self, feed_id: int, kind: str, before: datetime) -> int:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "DELETE FROM notifications WHERE feed_id=? AND kind=? AND created_at < ?",
                (feed_id, kind, before.astimezone(timezone.utc).isoformat()),
            )
            removed = cur.rowcount
            self._commit()
        return max(0, removed)

    # ------------------------------------------------------------------
    # Stream statistics
    # ------------------------------------------------------------------
    def get_stream_event(self, feed_id: int) -> StreamEvent | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT * FROM stream_events WHERE feed_id=?", (feed_id,))
            row = cur.fetchone()
        if row is None:
            return None
        return StreamEvent(
            feed_id=int(row["feed_id"]),
            session_id=str(row["session_id"]),
            started_at=parse_timestamp(row["started_at"]) or utcnow(),
            peak_viewers=int(row["peak_viewers"] or 0),
            average_viewers=int(row["average_viewers"] or 0),
            uptime_ticks=int(row["uptime_ticks"] or 0),
            last_title=str(row["last_title"] or ""),
            last_game=str(row["last_game"] or ""),
        )

    def save_stream_event(self, event: StreamEvent) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "INSERT INTO stream_events(feed_id, session_id, started_at, peak_viewers,"
                " average_viewers, uptime_ticks, last_title, last_game)"
                " VALUES(?, ?, ?, ?, ?, ?, ?, ?) ON CONFLICT(feed_id) DO UPDATE SET"
                " session_id=excluded.session_id, started_at=excluded.started_at,"
                " peak_viewers=excluded.peak_viewers,"
                " average_viewers=excluded.average_viewers,"
                " uptime_ticks=excluded.uptime_ticks, last_title=excluded.last_title,"
                " last_game=excluded.last_game",
                (
                    event.feed_id,
                    event.session_id,
                    event.started_at.isoformat(),
                    event.peak_viewers,
                    event.average_viewers,
                    event.uptime_ticks,
                    event.last_title,
                    event.last_game,
                ),
            )
            self._commit()

    def delete_stream_event(self, feed_id: int) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("DELETE FROM stream_events WHERE feed_id=?", (feed_id,))
            self._commit()

    def close(self) -> None:
        self._conn.close()


class UnitOfWork:
    """Persistence access scoped to one feed-processing task.

    Carries the feed being processed and a memo of upstream lookups made
    during this task, so components never share lazy state across feeds.
    """

    def __init__(self, store: TrackerStore, feed: Feed):
        self.store = store
        self.feed = feed
        self.memo = PassMemo()

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self.store.atomic():
            yield

    def features(self, channel_id: str) -> ChannelFeatures:
        key = ("features", channel_id)
        cached = self.memo.peek(key)
        if cached is None:
            cached = self.store.load_channel_features(channel_id)
            self.memo.put(key, cached)
        return cached

    def forget_features(self, channel_id: str) -> None:
        self.memo.forget(("features", channel_id))


def _feed_from_row(row: sqlite3.Row) -> Feed:
    return Feed(
        id=int(row["id"]),
        platform=str(row["platform"]),
        external_id=str(row["external_id"]),
        display_name=str(row["display_name"] or ""),
        last_item_id=str(row["last_item_id"]) if row["last_item_id"] else None,
        added_at=parse_timestamp(row["added_at"]),
    )


def _target_from_row(row: sqlite3.Row) -> Target:
    color = row["embed_color"]
    return Target(
        id=int(row["id"]),
        feed_id=int(row["feed_id"]),
        channel_id=str(row["channel_id"]),
        guild_id=str(row["guild_id"]) if row["guild_id"] else None,
        tracker_user_id=str(row["tracker_user_id"]),
        embed_color=int(color) if color is not None else None,
        added_at=parse_timestamp(row["added_at"]),
    )


def _notification_from_row(row: sqlite3.Row) -> NotificationRecord:
    return NotificationRecord(
        id=int(row["id"]),
        target_id=int(row["target_id"]),
        feed_id=int(row["feed_id"]),
        session_id=str(row["session_id"]),
        kind=str(row["kind"]),
        message=MessageRef(
            channel_id=str(row["channel_id"]), message_id=str(row["message_id"])
        ),
        deleted=bool(row["deleted"]),
        created_at=parse_timestamp(row["created_at"]),
    )


def _settings_from_options(
    settings: _Settings, options: dict[str, str], prefix: str
) -> _Settings:
    for name in settings.__dataclass_fields__:
        raw = options.get(prefix + name)
        if raw is not None:
            setattr(settings, name, parse_bool(raw, getattr(settings, name)))
    return settings
