from __future__ import annotations

from pathlib import Path

from fakes import NOW
from feed_notifier.ledger import POST, STREAM, NotificationLedger
from feed_notifier.models import TWITCH, MessageRef, StreamInfo
from feed_notifier.registry import FeedRegistry
from feed_notifier.store import TrackerStore


def _stream(viewers: int, title: str = "title", game: str = "Game") -> StreamInfo:
    return StreamInfo(
        id="s1",
        user_id="42",
        user_login="streamer",
        title=title,
        game_id="1",
        game_name=game,
        viewers=viewers,
        started_at=NOW,
    )


def _uow(tmp_path: Path):
    store = TrackerStore(tmp_path / "db.sqlite")
    result = FeedRegistry(store).track(
        TWITCH, "42", "streamer", channel_id="c1", guild_id="g1", user_id="u"
    )
    return store.unit_of_work(result.feed), result.target


def test_stream_statistics_running_average(tmp_path: Path) -> None:
    uow, _ = _uow(tmp_path)
    ledger = NotificationLedger()
    event = ledger.open_stream(uow, _stream(10))

    assert ledger.update_stream(uow, event, _stream(20)) is False
    assert ledger.update_stream(uow, event, _stream(30, game="Other")) is True

    stored = ledger.stream_event(uow)
    assert stored is not None
    assert stored.peak_viewers == 30
    assert stored.average_viewers == 20
    assert stored.uptime_ticks == 3
    assert stored.last_game == "Other"

    ledger.close_stream(uow)
    assert ledger.stream_event(uow) is None


def test_records_are_scoped_by_kind_and_session(tmp_path: Path) -> None:
    uow, target = _uow(tmp_path)
    ledger = NotificationLedger()

    record = ledger.record(uow, target, "s1", MessageRef("c1", "m1"))
    assert record is not None
    assert ledger.record(uow, target, "s1", MessageRef("c1", "m2")) is None
    assert ledger.record(uow, target, "100", MessageRef("c1", "m3"), kind=POST) is not None

    assert [item.message.message_id for item in ledger.for_feed(uow, kind=STREAM)] == ["m1"]
    assert ledger.find_for_target(uow, target, kind=POST, session_id="100") is not None
    assert ledger.find_for_target(uow, target, kind=POST, session_id="101") is None

    ledger.mark_deleted(uow, record)
    assert record.deleted
    stored = ledger.find_for_target(uow, target)
    assert stored is not None and stored.deleted
    ledger.delete(uow, record)
    assert ledger.for_feed(uow) == []
