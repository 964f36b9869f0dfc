"""Change feed — in-process channel for row-level table mutations.

Learn: Every dashboard list is a view over one table that must follow the
table as it changes. Producers (the commit capture, the Postgres LISTEN
listener, the Redis relay) call `feed.publish(change)`; consumers
(QueueEngine refreshes, ChatSession, the ribbon and missed-call trackers)
hold a `Subscription`.

Delivery rules:
1. publish() is synchronous and never blocks — it only enqueues, so it is
   safe inside SQLAlchemy session events and asyncpg callbacks.
2. Each subscription has its own queue + pump task, so one subscriber sees
   changes in publish order and a slow subscriber never stalls another.
3. A handler that raises is logged; its subscription keeps running.
4. close() is idempotent and synchronous; nothing is delivered after it.
5. A subscription registered with a `key` replaces any live subscription
   holding the same key (at most one subscription per key).
"""

import asyncio
import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

logger = structlog.get_logger()

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"
ANY = "*"

EVENTS = {INSERT, UPDATE, DELETE}

Handler = Callable[["Change"], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class Change:
    """One row-level mutation. `record` is the new row (old row on delete)."""

    table: str
    event: str
    record: dict[str, Any]
    old: Optional[dict[str, Any]] = None
    origin: str = field(default="", compare=False)

    def to_json(self) -> str:
        return json.dumps({
            "table": self.table,
            "event": self.event,
            "record": self.record,
            "old": self.old,
            "origin": self.origin,
        })

    @classmethod
    def from_payload(cls, payload: Union[str, bytes, dict]) -> "Change":
        """Parse a NOTIFY / pub-sub payload.

        Accepts both our own JSON shape and the trigger's (`op` instead of
        `event`, upper-case operation names).
        """
        data = json.loads(payload) if isinstance(payload, (str, bytes)) else payload
        event = (data.get("event") or data.get("op") or "").lower()
        if event not in EVENTS:
            raise ValueError(f"Unknown change event: {event!r}")
        return cls(
            table=data["table"],
            event=event,
            record=data.get("record") or {},
            old=data.get("old"),
            origin=data.get("origin", ""),
        )


class Subscription:
    """Handle for one registered consumer. Call close() to tear it down."""

    def __init__(
        self,
        feed: "ChangeFeed",
        table: str,
        handler: Handler,
        event: str = ANY,
        where: Optional[dict[str, Any]] = None,
        key: Optional[str] = None,
    ):
        if event != ANY and event not in EVENTS:
            raise ValueError(f"Unknown change event: {event!r}")
        self.feed = feed
        self.table = table
        self.handler = handler
        self.event = event
        self.where = {k: str(v) for k, v in (where or {}).items()}
        self.key = key
        self.closed = False
        self.delivered = 0
        self._queue: asyncio.Queue[Change] = asyncio.Queue()
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._task = asyncio.get_running_loop().create_task(self._pump())

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<Subscription {self.table}:{self.event} {self.where or ''} {state}>"

    @property
    def pending(self) -> int:
        return self._pending

    def matches(self, change: Change) -> bool:
        if self.closed or change.table != self.table:
            return False
        if self.event != ANY and change.event != self.event:
            return False
        return all(
            str(change.record.get(k)) == v for k, v in self.where.items()
        )

    def offer(self, change: Change) -> None:
        self._pending += 1
        self._idle.clear()
        self._queue.put_nowait(change)

    async def wait_idle(self) -> None:
        await self._idle.wait()

    def close(self) -> None:
        """Stop delivery. Safe to call more than once, and from the handler."""
        if self.closed:
            return
        self.closed = True
        self.feed._remove(self)
        if self._task is not asyncio.current_task():
            self._task.cancel()
        self._pending = 0
        self._idle.set()
        logger.debug("feed.unsubscribed", table=self.table, key=self.key)

    async def _pump(self) -> None:
        while not self.closed:
            change = await self._queue.get()
            try:
                if self.closed:
                    break
                result = self.handler(change)
                if inspect.isawaitable(result):
                    await result
                self.delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "feed.handler_failed",
                    table=self.table,
                    change_event=change.event,
                    key=self.key,
                )
            finally:
                if not self.closed:
                    self._pending -= 1
                    if self._pending <= 0:
                        self._pending = 0
                        self._idle.set()


class ChangeFeed:
    """Fan-out hub: one publish, many filtered subscriptions."""

    def __init__(self):
        self._subs: list[Subscription] = []
        self._taps: list[Callable[[Change], None]] = []

    def subscribe(
        self,
        table: str,
        handler: Handler,
        *,
        event: str = ANY,
        where: Optional[dict[str, Any]] = None,
        key: Optional[str] = None,
    ) -> Subscription:
        """Register `handler` for changes on `table`.

        Must be called from inside a running event loop. If `key` is given,
        any live subscription with the same key is closed first.
        """
        if key is not None:
            for existing in [s for s in self._subs if s.key == key]:
                existing.close()
        sub = Subscription(self, table, handler, event=event, where=where, key=key)
        self._subs.append(sub)
        logger.debug("feed.subscribed", table=table, change_event=event, key=key)
        return sub

    def publish(self, change: Change) -> None:
        for sub in list(self._subs):
            if sub.matches(change):
                sub.offer(change)
        for tap in list(self._taps):
            try:
                tap(change)
            except Exception:
                logger.exception("feed.tap_failed", table=change.table)

    def tap(self, fn: Callable[[Change], None]) -> Callable[[], None]:
        """Observe every published change (used by relays). Returns an undo."""
        self._taps.append(fn)
        return lambda: self._taps.remove(fn) if fn in self._taps else None

    def subscriptions(
        self, table: Optional[str] = None, key: Optional[str] = None
    ) -> list[Subscription]:
        return [
            s for s in self._subs
            if (table is None or s.table == table) and (key is None or s.key == key)
        ]

    async def drain(self) -> None:
        """Wait until every subscriber has handled everything published so far.

        Handlers may publish more changes (a refresh that commits), so this
        loops until the whole feed is quiet.
        """
        while True:
            busy = [s for s in self._subs if s.pending]
            if not busy:
                return
            await asyncio.gather(*(s.wait_idle() for s in busy))

    def close_all(self) -> None:
        for sub in list(self._subs):
            sub.close()

    def _remove(self, sub: Subscription) -> None:
        if sub in self._subs:
            self._subs.remove(sub)


# Process-wide feed used by the app; tests build their own.
feed = ChangeFeed()


def get_feed() -> ChangeFeed:
    """FastAPI dependency — the process feed (overridden in tests)."""
    return feed
