from __future__ import annotations

import asyncio
from pathlib import Path

from fakes import FakeSleep
from feed_notifier.models import TWITCH
from feed_notifier.scheduler import PollingWatcher
from feed_notifier.store import TrackerStore


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class StubWatcher(PollingWatcher):
    platform = TWITCH

    def __init__(self, store: TrackerStore, clock: FakeClock, **kwargs) -> None:
        super().__init__(store, clock=clock, **kwargs)
        self.clock = clock
        self.passes = 0
        self.fail = False
        self.reset_after: float | None = None
        self.hang = False

    async def update_all(self) -> int:
        self.passes += 1
        self.clock.now += 20.0
        if self.reset_after is not None:
            self.defer_until_reset(self.reset_after)
        if self.hang:
            await asyncio.Event().wait()
        if self.fail:
            raise RuntimeError("boom")
        return 0


def test_loop_sleeps_only_the_remainder(tmp_path: Path) -> None:
    sleep = FakeSleep()
    watcher = StubWatcher(
        TrackerStore(tmp_path / "db.sqlite"), FakeClock(), interval=60.0, sleep=sleep
    )

    asyncio.run(watcher.run(max_passes=2))

    assert watcher.passes == 2
    assert sleep.calls == [40.0, 40.0]


def test_failing_pass_does_not_stop_loop(tmp_path: Path) -> None:
    sleep = FakeSleep()
    watcher = StubWatcher(
        TrackerStore(tmp_path / "db.sqlite"), FakeClock(), interval=10.0, sleep=sleep
    )
    watcher.fail = True

    asyncio.run(watcher.run(max_passes=3))

    assert watcher.passes == 3
    assert sleep.calls == [0.0, 0.0, 0.0]


def test_feed_task_timeout_is_isolated(tmp_path: Path) -> None:
    store = TrackerStore(tmp_path / "db.sqlite")
    feed = store.add_feed(TWITCH, "1", "slow")
    watcher = StubWatcher(store, FakeClock(), interval=60.0, feed_timeout=0.01)

    async def slow(uow) -> None:
        await asyncio.sleep(1.0)

    async def broken(uow) -> None:
        raise ValueError("bad payload")

    async def fine(uow) -> None:
        assert uow.feed.id == feed.id

    async def runner() -> list[bool]:
        return [
            await watcher.run_feed_task(feed, slow),
            await watcher.run_feed_task(feed, broken),
            await watcher.run_feed_task(feed, fine),
        ]

    assert asyncio.run(runner()) == [False, False, True]


def test_rate_limit_wait_outlives_pass_timeout(tmp_path: Path) -> None:
    sleep = FakeSleep()
    watcher = StubWatcher(
        TrackerStore(tmp_path / "db.sqlite"),
        FakeClock(),
        interval=0.0,
        pass_timeout=0.05,
        sleep=sleep,
    )
    watcher.reset_after = 120.0
    watcher.hang = True

    asyncio.run(watcher.run(max_passes=2))

    assert watcher.passes == 2
    assert sleep.calls == [120.0, 120.0]


def test_rate_limit_wait_replaces_shorter_interval_remainder(tmp_path: Path) -> None:
    sleep = FakeSleep()
    watcher = StubWatcher(
        TrackerStore(tmp_path / "db.sqlite"), FakeClock(), interval=60.0, sleep=sleep
    )
    watcher.reset_after = 90.0

    asyncio.run(watcher.run(max_passes=1))
    watcher.reset_after = None
    asyncio.run(watcher.run(max_passes=1))

    assert sleep.calls == [90.0, 40.0]
