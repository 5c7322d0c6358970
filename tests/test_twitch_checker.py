from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

from fakes import NOW, FakeDiscord, FakeSleep, err
from feed_notifier.dispatcher import NotificationDispatcher
from feed_notifier.errors import ErrorKind, Ok
from feed_notifier.ledger import NotificationLedger
from feed_notifier.models import TWITCH, StreamInfo, StreamUser
from feed_notifier.registry import FeedRegistry
from feed_notifier.resolver import TargetResolver
from feed_notifier.store import TrackerStore
from feed_notifier.twitch_checker import TwitchChecker


class DummyTwitch:
    def __init__(self) -> None:
        self.streams: dict[str, object] = {}
        self.users: dict[str, object] = {}
        self.stream_calls = 0

    async def fetch_streams(self, user_ids):
        self.stream_calls += 1
        return {user_id: self.streams.get(user_id, Ok(None)) for user_id in user_ids}

    async def fetch_user(self, user_id: str):
        user = self.users.get(user_id)
        if isinstance(user, Exception):
            raise user
        if user is None:
            return err(ErrorKind.NOT_FOUND)
        return user

    async def fetch_game_art(self, game_id: str):
        return "https://art/game.jpg"


def _live(user_id: str) -> Ok:
    return Ok(
        StreamInfo(
            id=f"s{user_id}",
            user_id=user_id,
            user_login=f"user{user_id}",
            title="title",
            game_id="1",
            game_name="Game",
            viewers=5,
            started_at=NOW - timedelta(minutes=1),
        )
    )


def _build(tmp_path: Path, feeds: dict[str, str], **kwargs):
    store = TrackerStore(tmp_path / "db.sqlite")
    registry = FeedRegistry(store)
    discord = FakeDiscord()
    twitch = DummyTwitch()
    for external_id, channel_id in feeds.items():
        discord.add_channel(channel_id)
        registry.track(
            TWITCH, external_id, f"user{external_id}", channel_id=channel_id, guild_id="g1", user_id="u"
        )
        twitch.users[external_id] = Ok(
            StreamUser(id=external_id, login=f"user{external_id}", display_name=f"User{external_id}")
        )
    ledger = NotificationLedger()
    dispatcher = NotificationDispatcher(discord, registry, ledger, now=lambda: NOW)
    sleep = FakeSleep()
    checker = TwitchChecker(
        store,
        twitch,
        registry,
        TargetResolver(discord, registry),
        ledger,
        dispatcher,
        interval=60.0,
        sleep=sleep,
        **kwargs,
    )
    return store, twitch, discord, checker, sleep


def test_rate_limited_pass_waits_for_reset(tmp_path: Path) -> None:
    store, twitch, discord, checker, sleep = _build(tmp_path, {"1": "c1"}, clock=lambda: 0.0)
    twitch.streams["1"] = err(ErrorKind.RATE_LIMITED, reset_after=90.0)

    processed = asyncio.run(checker.update_all())
    assert processed == 0
    assert sleep.calls == []

    asyncio.run(checker.run(max_passes=1))
    assert sleep.calls == [90.0]
    assert twitch.stream_calls == 2
    assert discord.sent == []
    assert discord.channel_calls == []


def test_live_then_offline_round_trip(tmp_path: Path) -> None:
    store, twitch, discord, checker, _ = _build(tmp_path, {"1": "c1"})
    twitch.streams["1"] = _live("1")

    assert asyncio.run(checker.update_all()) == 1
    assert len(discord.sent) == 1
    embed = discord.sent[0][2][0]
    assert embed["thumbnail"] == {"url": "https://art/game.jpg"}

    asyncio.run(checker.update_all())
    assert len(discord.sent) == 1

    twitch.streams["1"] = Ok(None)
    asyncio.run(checker.update_all())
    assert len(discord.edited) == 1
    assert discord.deleted == []
    feed = store.find_feed(TWITCH, "1")
    assert feed is not None
    assert store.get_stream_event(feed.id) is None
    assert store.list_notifications(feed.id, kind="stream") == []


def test_statistics_accumulate_between_passes(tmp_path: Path) -> None:
    store, twitch, discord, checker, _ = _build(tmp_path, {"1": "c1"})
    twitch.streams["1"] = _live("1")
    asyncio.run(checker.update_all())
    busier = _live("1")
    busier.value.viewers = 15
    twitch.streams["1"] = busier
    asyncio.run(checker.update_all())

    feed = store.find_feed(TWITCH, "1")
    assert feed is not None
    event = store.get_stream_event(feed.id)
    assert event is not None
    assert event.peak_viewers == 15
    assert event.average_viewers == 10
    assert event.uptime_ticks == 2


def test_failing_feed_does_not_block_others(tmp_path: Path) -> None:
    store, twitch, discord, checker, _ = _build(tmp_path, {"1": "c1", "2": "c2"})
    twitch.streams["1"] = _live("1")
    twitch.streams["2"] = _live("2")
    twitch.users["1"] = RuntimeError("boom")

    processed = asyncio.run(checker.update_all())

    assert processed == 1
    assert [channel for channel, _, _ in discord.sent] == ["c2"]


def test_missing_user_untracks_feed(tmp_path: Path) -> None:
    store, twitch, discord, checker, _ = _build(tmp_path, {"1": "c1"})
    twitch.streams["1"] = _live("1")
    del twitch.users["1"]

    asyncio.run(checker.update_all())

    assert store.find_feed(TWITCH, "1") is None
    assert discord.sent == []


def test_offline_feed_without_records_is_quiet(tmp_path: Path) -> None:
    store, twitch, discord, checker, _ = _build(tmp_path, {"1": "c1"})

    assert asyncio.run(checker.update_all()) == 1
    assert discord.sent == []
    assert discord.edited == []
    assert discord.deleted == []


def test_no_feeds_skips_platform_call(tmp_path: Path) -> None:
    store, twitch, discord, checker, _ = _build(tmp_path, {})

    assert asyncio.run(checker.update_all()) == 0
    assert twitch.stream_calls == 0
