"""Commit capture — turns ORM flushes into change-feed notifications.

Learn: The dashboard needs row-level change notifications from its store.
Postgres can produce them with triggers (see realtime/listener.py), but the
API process already knows exactly which rows it wrote. CommitCapture hooks
SQLAlchemy session events to collect them:

    after_flush     → snapshot new / modified / deleted rows into session.info
    after_commit    → publish the snapshots to the feed
    after_rollback  → drop them (nothing happened)

So a change is never published for a transaction that did not commit.
Use `session_class` as the `sync_session_class` of an async_sessionmaker.
"""

from typing import Any

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from switchboard.db.models import Base
from switchboard.realtime.feed import DELETE, INSERT, UPDATE, Change, ChangeFeed

PENDING_KEY = "feed_pending_changes"
ORIGIN = "commit"


class CommitCapture:
    """Collects flushed rows per session and publishes them on commit."""

    def __init__(self, feed: ChangeFeed):
        self.feed = feed
        self.session_class: type[Session] = type("FeedSession", (Session,), {})
        event.listen(self.session_class, "after_flush", self._after_flush)
        event.listen(self.session_class, "after_commit", self._after_commit)
        event.listen(self.session_class, "after_rollback", self._after_rollback)

    def _after_flush(self, session: Session, flush_context: Any) -> None:
        pending = session.info.setdefault(PENDING_KEY, [])
        for obj in session.new:
            if isinstance(obj, Base):
                pending.append(self._change(obj, INSERT))
        for obj in session.dirty:
            if isinstance(obj, Base) and session.is_modified(obj):
                pending.append(self._change(obj, UPDATE, old=_old_values(obj)))
        for obj in session.deleted:
            if isinstance(obj, Base):
                pending.append(self._change(obj, DELETE))

    def _after_commit(self, session: Session) -> None:
        pending = session.info.pop(PENDING_KEY, [])
        for change in pending:
            self.feed.publish(change)

    def _after_rollback(self, session: Session) -> None:
        session.info.pop(PENDING_KEY, None)

    @staticmethod
    def _change(obj: Base, event_name: str, old: dict | None = None) -> Change:
        return Change(
            table=obj.__tablename__,
            event=event_name,
            record=obj.feed_dict(),
            old=old,
            origin=ORIGIN,
        )


def _old_values(obj: Base) -> dict[str, Any]:
    """Pre-flush values of the columns that changed."""
    state = inspect(obj)
    old = {}
    for attr in state.mapper.column_attrs:
        if attr.key in obj.__feed_exclude__:
            continue
        history = state.attrs[attr.key].history
        if history.deleted:
            value = history.deleted[0]
            old[attr.key] = str(value) if value is not None else None
    return old
