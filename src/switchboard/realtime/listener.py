"""Postgres change listener — LISTEN/NOTIFY for row changes made anywhere.

Learn: Commit capture only sees rows this process wrote. The inbound-contact
front end, the telephony bridge that records missed calls, or a DBA with
psql write to the same tables. The Alembic migration installs a
`notify_row_change()` trigger on every dashboard table; this listener holds
one asyncpg connection that LISTENs on `settings.feed_channel` and
publishes each notification into a ChangeFeed.

Run standalone as a relay process:

    switchboard-feed

It then forwards every notification to Redis (RedisChangeRelay), where the
API processes pick it up. Crash isolation: if the relay dies, the API keeps
serving and its own commits still reach its dashboards.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import asyncpg

from switchboard.config import settings
from switchboard.realtime.feed import Change, ChangeFeed
from switchboard.realtime.pubsub import RedisChangeRelay, close_redis, init_redis

logger = logging.getLogger("switchboard.feed")

ORIGIN = "notify"


@dataclass
class ListenerStats:
    """Runtime statistics for monitoring."""
    received: int = 0
    errors: int = 0
    started_at: Optional[datetime] = None


def asyncpg_url(database_url: str) -> str:
    """SQLAlchemy URL → plain libpq URL asyncpg understands."""
    return database_url.replace("postgresql+asyncpg://", "postgresql://")


class PostgresChangeListener:
    """Publishes `row_change` notifications into a ChangeFeed."""

    def __init__(
        self,
        feed: ChangeFeed,
        database_url: Optional[str] = None,
        channel: Optional[str] = None,
    ):
        self.feed = feed
        self.database_url = asyncpg_url(database_url or settings.database_url)
        self.channel = channel or settings.feed_channel
        self.stats = ListenerStats()
        self._conn: Optional[asyncpg.Connection] = None

    async def start(self) -> None:
        self._conn = await asyncpg.connect(self.database_url)
        await self._conn.add_listener(self.channel, self._on_notify)
        self.stats.started_at = datetime.now(timezone.utc)
        logger.info("Listening on PG channel %r", self.channel)

    async def stop(self) -> None:
        if self._conn is not None:
            try:
                await self._conn.remove_listener(self.channel, self._on_notify)
            finally:
                await self._conn.close()
                self._conn = None
        logger.info(
            "Listener stopped (received=%d, errors=%d)",
            self.stats.received,
            self.stats.errors,
        )

    def _on_notify(self, conn, pid, channel, payload):
        """Synchronous asyncpg callback — parse and publish, never raise."""
        try:
            parsed = Change.from_payload(payload)
            change = Change(
                table=parsed.table,
                event=parsed.event,
                record=parsed.record,
                old=parsed.old,
                origin=ORIGIN,
            )
        except Exception:
            logger.exception("Bad %s payload: %.200s", channel, payload)
            self.stats.errors += 1
            return
        self.stats.received += 1
        self.feed.publish(change)


async def run() -> None:
    """Run the NOTIFY → Redis relay until interrupted."""
    feed = ChangeFeed()
    listener = PostgresChangeListener(feed)
    redis = await init_redis()
    relay = RedisChangeRelay(feed, redis)

    stopping = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stopping.set)

    url = listener.database_url
    logger.info("Feed relay starting (DB: %s)", url.split("@")[1] if "@" in url else url)

    await relay.start()
    await listener.start()
    try:
        await stopping.wait()
    finally:
        await listener.stop()
        await relay.stop()
        await close_redis()
        logger.info("Feed relay stopped. Stats: %s", listener.stats)


def main():
    """CLI entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    asyncio.run(run())


if __name__ == "__main__":
    main()
