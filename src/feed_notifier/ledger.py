"""Persisted notification state and live stream statistics."""

from __future__ import annotations

from datetime import datetime

from .models import MessageRef, NotificationRecord, StreamEvent, StreamInfo, Target
from .store import UnitOfWork

STREAM = "stream"
POST = "post"


class NotificationLedger:
    """Create/lookup/finalise notification records for one feed task."""

    def find_for_target(
        self, uow: UnitOfWork, target: Target, *, kind: str = STREAM, session_id: str | None = None
    ) -> NotificationRecord | None:
        return uow.store.find_notification(target.id, kind=kind, session_id=session_id)

    def for_feed(self, uow: UnitOfWork, *, kind: str = STREAM) -> list[NotificationRecord]:
        return uow.store.list_notifications(uow.feed.id, kind=kind)

    def record(
        self,
        uow: UnitOfWork,
        target: Target,
        session_id: str,
        message: MessageRef,
        *,
        kind: str = STREAM,
    ) -> NotificationRecord | None:
        """Persist a delivered message; ``None`` if the session was already recorded."""

        return uow.store.add_notification(target.id, uow.feed.id, session_id, kind, message)

    def mark_deleted(self, uow: UnitOfWork, record: NotificationRecord) -> None:
        uow.store.set_notification_deleted(record.id)
        record.deleted = True

    def delete(self, uow: UnitOfWork, record: NotificationRecord) -> None:
        uow.store.delete_notification(record.id)

    def prune_posts(self, uow: UnitOfWork, older_than: datetime) -> int:
        return uow.store.prune_notifications(uow.feed.id, POST, older_than)

    # ------------------------------------------------------------------
    # Stream statistics
    # ------------------------------------------------------------------
    def stream_event(self, uow: UnitOfWork) -> StreamEvent | None:
        return uow.store.get_stream_event(uow.feed.id)

    def open_stream(self, uow: UnitOfWork, stream: StreamInfo) -> StreamEvent:
        event = StreamEvent(
            feed_id=uow.feed.id,
            session_id=stream.id,
            started_at=stream.started_at,
            peak_viewers=stream.viewers,
            average_viewers=stream.viewers,
            uptime_ticks=1,
            last_title=stream.title,
            last_game=stream.game_name,
        )
        uow.store.save_stream_event(event)
        return event

    def update_stream(self, uow: UnitOfWork, event: StreamEvent, stream: StreamInfo) -> bool:
        """Fold the latest observation into the statistics.

        Returns True when the title or game changed since the last pass.
        """

        ticks = event.uptime_ticks
        event.average_viewers = round((event.average_viewers * ticks + stream.viewers) / (ticks + 1))
        event.uptime_ticks = ticks + 1
        event.peak_viewers = max(event.peak_viewers, stream.viewers)
        changed = stream.title != event.last_title or stream.game_name != event.last_game
        if changed:
            event.last_title = stream.title
            event.last_game = stream.game_name
        uow.store.save_stream_event(event)
        return changed

    def close_stream(self, uow: UnitOfWork) -> None:
        uow.store.delete_stream_event(uow.feed.id)
