"""Fixed-cadence polling of one platform."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from .models import Feed
from .store import TrackerStore, UnitOfWork

logger = logging.getLogger(__name__)

FeedHandler = Callable[[UnitOfWork], Awaitable[None]]


class PollingWatcher:
    """Base class for platform checkers.

    Subclasses implement :meth:`update_all`; the loop keeps the cadence fixed
    by sleeping only for what remains of the interval after a pass.
    """

    platform = ""

    def __init__(
        self,
        store: TrackerStore,
        *,
        interval: float,
        feed_timeout: float = 60.0,
        pass_timeout: float = 600.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self.interval = interval
        self._feed_timeout = feed_timeout
        self._pass_timeout = pass_timeout
        self._sleep = sleep
        self._clock = clock
        self._resume_at: float | None = None

    async def run(self, *, max_passes: int | None = None) -> None:
        passes = 0
        while max_passes is None or passes < max_passes:
            started = self._clock()
            try:
                processed = await asyncio.wait_for(self.update_all(), timeout=self._pass_timeout)
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                logger.warning(
                    "Проход %s не уложился в %.0f с и был прерван", self.platform, self._pass_timeout
                )
            except Exception:
                logger.exception("Ошибка в проходе %s", self.platform)
            else:
                logger.debug("Проход %s завершён, обработано лент: %s", self.platform, processed)
            passes += 1
            await self._sleep(self._next_delay(started))

    def _next_delay(self, started: float) -> float:
        now = self._clock()
        delay = max(0.0, self.interval - (now - started))
        if self._resume_at is not None:
            delay = max(delay, self._resume_at - now)
            self._resume_at = None
        return delay

    async def update_all(self) -> int:
        """Run one pass and return the number of feeds processed."""

        raise NotImplementedError

    async def run_feed_task(self, feed: Feed, handler: FeedHandler) -> bool:
        """Process one feed in its own unit of work, isolating any failure."""

        uow = self._store.unit_of_work(feed)
        try:
            await asyncio.wait_for(handler(uow), timeout=self._feed_timeout)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.warning(
                "Обработка %s/%s превысила %.0f с",
                feed.platform,
                feed.display_name or feed.external_id,
                self._feed_timeout,
            )
            return False
        except Exception:
            logger.exception(
                "Ошибка при обработке %s/%s", feed.platform, feed.display_name or feed.external_id
            )
            return False
        return True

    def defer_until_reset(self, reset_after: float) -> None:
        """Hold the next pass back until the platform rate limit resets.

        The wait happens in :meth:`run` between passes, outside the pass timeout.
        """

        logger.warning("Лимит запросов %s исчерпан, ожидание %.0f с", self.platform, reset_after)
        resume_at = self._clock() + reset_after
        if self._resume_at is None or resume_at > self._resume_at:
            self._resume_at = resume_at
