from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

from fakes import NOW, FakeDiscord, err
from feed_notifier.dispatcher import NotificationDispatcher
from feed_notifier.errors import ErrorKind
from feed_notifier.ledger import POST, NotificationLedger
from feed_notifier.models import (
    TWITCH,
    TWITTER,
    MessageRef,
    PostMedia,
    SocialPost,
    SocialUser,
    StreamInfo,
    StreamUser,
)
from feed_notifier.registry import FeedRegistry
from feed_notifier.store import TrackerStore

USER = StreamUser(id="42", login="streamer", display_name="Streamer")
POSTER = SocialUser(id="7", username="poster", name="Poster")


def _stream(*, started_ago: timedelta = timedelta(minutes=1), title: str = "hello") -> StreamInfo:
    return StreamInfo(
        id="s1",
        user_id="42",
        user_login="streamer",
        title=title,
        game_id="1",
        game_name="Game",
        viewers=10,
        started_at=NOW - started_ago,
    )


def _post(post_id: str = "100", **kwargs) -> SocialPost:
    kwargs.setdefault("created_at", NOW - timedelta(minutes=1))
    return SocialPost(id=post_id, author_id="7", text="text", **kwargs)


class Harness:
    def __init__(self, tmp_path: Path, platform: str, channels: list[str], *, timeout: float = 6.0):
        self.store = TrackerStore(tmp_path / "db.sqlite")
        self.registry = FeedRegistry(self.store)
        self.ledger = NotificationLedger()
        self.discord = FakeDiscord()
        external = "42" if platform == TWITCH else "7"
        self.targets = []
        for channel_id in channels:
            self.discord.add_channel(channel_id)
            result = self.registry.track(
                platform, external, "name", channel_id=channel_id, guild_id="g1", user_id="u"
            )
            self.targets.append(result.target)
            self.feed = result.feed
        self.dispatcher = NotificationDispatcher(
            self.discord, self.registry, self.ledger, timeout=timeout, now=lambda: NOW
        )

    def uow(self):
        return self.store.unit_of_work(self.feed)

    def live(self, stream: StreamInfo, *, changed: bool = False) -> None:
        uow = self.uow()
        if self.ledger.stream_event(uow) is None:
            self.ledger.open_stream(uow, stream)
        asyncio.run(self.dispatcher.stream_live(uow, self.targets, USER, stream, changed=changed))

    def ended(self) -> None:
        asyncio.run(self.dispatcher.stream_ended(self.uow(), USER))

    def post(self, post: SocialPost) -> None:
        asyncio.run(self.dispatcher.post(self.uow(), self.targets, POSTER, post))


def test_forbidden_channel_does_not_affect_siblings(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITCH, ["c1", "c2"])
    h.discord.send_errors["c1"] = err(ErrorKind.FORBIDDEN)

    h.live(_stream())

    assert [channel for channel, _, _ in h.discord.sent] == ["c2"]
    assert h.store.find_target(h.feed.id, "c1") is None
    assert h.store.is_tracking_enabled("c1", TWITCH) is False
    assert h.ledger.find_for_target(h.uow(), h.targets[1]) is not None


def test_forbidden_channel_leaves_sibling_record_untouched(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITCH, ["c1", "c2"])
    h.ledger.record(h.uow(), h.targets[1], "s1", MessageRef("c2", "m0"))
    h.discord.send_errors["c1"] = err(ErrorKind.FORBIDDEN)

    h.live(_stream())

    assert h.discord.sent == []
    assert h.discord.edited == []
    assert h.discord.deleted == []
    assert h.store.find_target(h.feed.id, "c1") is None
    assert h.store.find_target(h.feed.id, "c2") is not None
    record = h.ledger.find_for_target(h.uow(), h.targets[1])
    assert record is not None
    assert record.message == MessageRef("c2", "m0")
    assert record.deleted is False


def test_repeated_live_pass_is_idempotent(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITCH, ["c1"])
    h.live(_stream())
    h.live(_stream())

    assert len(h.discord.sent) == 1
    assert h.discord.edited == []
    assert len(h.ledger.for_feed(h.uow())) == 1


def test_changed_stream_edits_existing_message(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITCH, ["c1"])
    h.live(_stream())
    h.live(_stream(title="new title"), changed=True)

    assert len(h.discord.sent) == 1
    assert len(h.discord.edited) == 1
    assert "new title" in h.discord.edited[0][1][0]["description"]


def test_failed_edit_marks_record_deleted(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITCH, ["c1"])
    h.live(_stream())
    h.discord.edit_errors["c1"] = err(ErrorKind.NOT_FOUND)

    h.live(_stream(title="new"), changed=True)
    record = h.ledger.find_for_target(h.uow(), h.targets[0])
    assert record is not None and record.deleted

    del h.discord.edit_errors["c1"]
    h.live(_stream(title="newer"), changed=True)
    assert h.discord.edited == []
    assert len(h.discord.sent) == 1


def test_stream_end_with_summaries_edits_message(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITCH, ["c1"])
    h.live(_stream())
    h.ended()

    assert len(h.discord.edited) == 1
    assert h.discord.deleted == []
    assert "was live for" in h.discord.edited[0][1][0]["author"]["name"]
    assert h.ledger.for_feed(h.uow()) == []
    assert h.ledger.stream_event(h.uow()) is None


def test_stream_end_without_summaries_deletes_message(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITCH, ["c1"])
    h.store.set_channel_option("c1", "streams.summaries", "off")
    h.live(_stream())
    h.ended()

    assert h.discord.edited == []
    assert len(h.discord.deleted) == 1
    assert h.ledger.for_feed(h.uow()) == []


def test_stream_end_without_statistics_abandons_messages(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITCH, ["c1"])
    h.live(_stream())
    h.ledger.close_stream(h.uow())
    h.ended()

    assert h.discord.edited == []
    assert len(h.discord.deleted) == 1
    assert h.ledger.for_feed(h.uow()) == []


def test_role_not_pinged_again_within_cooldown(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITCH, ["c1"])
    h.discord.roles["g1"] = {"r1"}
    h.store.set_mention(h.targets[0].id, "r1", None)
    h.store.set_last_mention(h.targets[0].id, NOW - timedelta(hours=2))

    h.live(_stream())

    assert len(h.discord.sent) == 1
    assert h.discord.sent[0][1] is None


def test_cooldown_drops_role_but_keeps_text(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITCH, ["c1"])
    h.discord.roles["g1"] = {"r1"}
    h.store.set_mention(h.targets[0].id, "r1", "live!")
    h.store.set_last_mention(h.targets[0].id, NOW - timedelta(hours=2))

    h.live(_stream())

    assert h.discord.sent[0][1] == "live!"
    mention = h.store.get_mention(h.targets[0].id)
    assert mention is not None and mention.last_mention == NOW - timedelta(hours=2)


def test_role_pinged_for_fresh_stream(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITCH, ["c1"])
    h.discord.roles["g1"] = {"r1"}
    h.store.set_mention(h.targets[0].id, "r1", "live!")

    h.live(_stream())

    assert h.discord.sent[0][1] == "<@&r1> live!"
    mention = h.store.get_mention(h.targets[0].id)
    assert mention is not None and mention.last_mention == NOW


def test_no_mention_for_stream_noticed_late(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITCH, ["c1"])
    h.discord.roles["g1"] = {"r1"}
    h.store.set_mention(h.targets[0].id, "r1", "live!")

    h.live(_stream(started_ago=timedelta(minutes=30)))

    assert h.discord.sent[0][1] is None


def test_deleted_role_is_dropped_from_config(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITCH, ["c1"])
    h.store.set_mention(h.targets[0].id, "gone", "live!")

    h.live(_stream())

    assert h.discord.sent[0][1] == "live!"
    mention = h.store.get_mention(h.targets[0].id)
    assert mention is not None and mention.role_id is None


def test_slow_discord_call_times_out(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITCH, ["c1"], timeout=0.01)
    h.discord.send_delay = 0.5

    h.live(_stream())

    assert h.discord.sent == []
    assert h.ledger.for_feed(h.uow()) == []
    assert h.store.count_targets(h.feed.id) == 1


def test_pin_and_publish_on_news_channel(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITCH, ["c1"])
    h.discord.add_channel("c1", type=5)
    h.store.set_channel_option("c1", "streams.pin_active", "on")
    h.store.set_channel_option("c1", "streams.publish", "on")

    h.live(_stream())
    h.ended()

    assert len(h.discord.pinned) == 1
    assert len(h.discord.crossposted) == 1
    assert h.discord.unpinned == h.discord.pinned


def test_sensitive_post_redacted_outside_nsfw_channel(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITTER, ["c1", "c2"])
    h.discord.add_channel("c2", nsfw=True)

    h.post(_post(sensitive=True))

    sent = {channel: embeds[0] for channel, _, embeds in h.discord.sent}
    assert "sensitive content" in sent["c1"]["description"]
    assert sent["c2"]["description"] == "text"
    assert len(h.ledger.for_feed(h.uow(), kind=POST)) == 2


def test_post_kinds_follow_channel_settings(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITTER, ["c1", "c2"])
    h.store.set_channel_option("c2", "posts.retweets", "on")

    h.post(_post(kind="retweet"))

    assert [channel for channel, _, _ in h.discord.sent] == ["c2"]


def test_post_delivered_once_per_target(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITTER, ["c1"])
    h.post(_post())
    h.post(_post())

    assert len(h.discord.sent) == 1


def test_media_only_channel_skips_text_posts(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITTER, ["c1"])
    h.store.set_channel_option("c1", "posts.media_only", "on")

    h.post(_post("100"))
    h.post(_post("101", media=(PostMedia(type="photo", url="https://img/1.jpg"),)))

    assert len(h.discord.sent) == 1
    assert h.discord.sent[0][2][0]["image"] == {"url": "https://img/1.jpg"}


def test_old_post_skips_role_ping(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITTER, ["c1"])
    h.discord.roles["g1"] = {"r1"}
    h.store.set_mention(h.targets[0].id, "r1", "new tweet")

    h.post(_post(created_at=NOW - timedelta(hours=1)))

    channel, content, embeds = h.discord.sent[0]
    assert content is not None
    assert "<@&r1>" not in content
    assert content.startswith("new tweet ")
    assert "Skipping ping" in embeds[0]["footer"]["text"]


def test_forbidden_post_disables_twitter_in_channel(tmp_path: Path) -> None:
    h = Harness(tmp_path, TWITTER, ["c1", "c2"])
    h.discord.send_errors["c1"] = err(ErrorKind.FORBIDDEN)

    h.post(_post())

    assert h.store.is_tracking_enabled("c1", TWITTER) is False
    assert h.store.is_tracking_enabled("c1", TWITCH) is True
    assert h.store.find_target(h.feed.id, "c1") is None
    assert h.ledger.find_for_target(h.uow(), h.targets[1], kind=POST, session_id="100")
