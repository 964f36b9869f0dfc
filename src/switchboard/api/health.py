"""Health check endpoint.

Learn: Reports the store, Redis, and this process's change feed. Redis
being down is "degraded", not fatal: dashboards still see this process's
own commits, just not other processes'. The feed section shows how many
live subscriptions exist and whether the cross-process relay is running.
"""

from fastapi import APIRouter, Request
from sqlalchemy import text

from switchboard import __version__
from switchboard.db.engine import engine
from switchboard.realtime.feed import feed
from switchboard.realtime.pubsub import get_redis

router = APIRouter()


async def _probe_database() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        return f"error: {e}"
    return "ok"


async def _probe_redis() -> str:
    try:
        await get_redis().ping()
    except Exception as e:
        return f"error: {e}"
    return "ok"


@router.get("/health")
async def health_check(request: Request):
    """Dependency connectivity plus change-feed state."""
    database = await _probe_database()
    redis = await _probe_redis()
    relay = getattr(request.app.state, "relay", None)

    return {
        "status": "healthy" if database == redis == "ok" else "degraded",
        "server": "ok",
        "version": __version__,
        "database": database,
        "redis": redis,
        "feed": {
            "subscriptions": len(feed.subscriptions()),
            "relay": relay is not None,
        },
    }
