"""Redis pub/sub — relays change notifications between processes.

Learn: Redis pub/sub is fire-and-forget. If no one is listening, the message
is lost. That's fine here: a tracker that misses a change re-queries the
store on the next one, and every dashboard loads full snapshots on login.

Each API process runs one RedisChangeRelay:
- changes produced locally (commit capture, Postgres NOTIFY) are published
  to `settings.relay_channel`, stamped with this relay's origin
- changes received from the channel with a foreign origin are published
  into the local feed; they are never re-published, so nothing loops
"""

import asyncio
import uuid
from typing import Optional

import redis.asyncio as aioredis
import structlog

from switchboard.config import settings
from switchboard.realtime.feed import Change, ChangeFeed

logger = structlog.get_logger()

# Origins of changes that were produced inside this process.
LOCAL_ORIGINS = {"commit", "notify"}

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


async def init_redis(url: Optional[str] = None) -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global _redis
    _redis = aioredis.from_url(
        url or settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    # Verify connection
    await _redis.ping()
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    """Get the Redis connection (must be initialized first)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


class RedisChangeRelay:
    """Bridges a local ChangeFeed and a Redis pub/sub channel."""

    def __init__(
        self,
        feed: ChangeFeed,
        redis: aioredis.Redis,
        channel: Optional[str] = None,
    ):
        self.feed = feed
        self.redis = redis
        self.channel = channel or settings.relay_channel
        self.origin = f"relay:{uuid.uuid4().hex[:12]}"
        self.forwarded = 0
        self.received = 0
        self._pubsub = None
        self._listen_task: Optional[asyncio.Task] = None
        self._untap = None
        self._inflight: set[asyncio.Task] = set()

    async def start(self) -> None:
        self._pubsub = self.redis.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._untap = self.feed.tap(self._forward)
        self._listen_task = asyncio.create_task(self._listen())
        logger.info("relay.started", channel=self.channel, origin=self.origin)

    async def stop(self) -> None:
        if self._untap:
            self._untap()
            self._untap = None
        if self._listen_task:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
            self._listen_task = None
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
            self._pubsub = None
        logger.info("relay.stopped", forwarded=self.forwarded, received=self.received)

    def _forward(self, change: Change) -> None:
        """Feed tap: publish locally produced changes to Redis."""
        if change.origin not in LOCAL_ORIGINS:
            return
        stamped = Change(
            table=change.table,
            event=change.event,
            record=change.record,
            old=change.old,
            origin=self.origin,
        )
        task = asyncio.get_running_loop().create_task(self._publish(stamped))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _publish(self, change: Change) -> None:
        try:
            await self.redis.publish(self.channel, change.to_json())
            self.forwarded += 1
        except Exception as e:
            logger.warning("relay.publish_failed", table=change.table, error=str(e))

    async def _listen(self) -> None:
        async for message in self._pubsub.listen():
            if message["type"] != "message":
                continue
            try:
                change = Change.from_payload(message["data"])
            except (ValueError, KeyError) as e:
                logger.warning("relay.bad_payload", error=str(e))
                continue
            if change.origin == self.origin:
                continue
            self.received += 1
            self.feed.publish(change)
