"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown of the pieces the live
dashboards depend on:

- the process-wide ChangeFeed (commit capture is installed on every session)
- the Redis relay, so commits made by other API processes (and rows the
  `switchboard-feed` NOTIFY relay picks up) reach this process's dashboards
- the database engine
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.exceptions import RedisError

from switchboard import __version__
from switchboard.api import api_router
from switchboard.config import settings
from switchboard.db.engine import engine
from switchboard.middleware.request_id import RequestIdMiddleware
from switchboard.realtime.feed import feed
from switchboard.realtime.pubsub import RedisChangeRelay, close_redis, init_redis
from switchboard.realtime.websocket import router as ws_router

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` at
    shutdown. Redis is optional: without it dashboards still see every
    change committed through this process.
    """
    logger.info(
        "switchboard.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    relay: Optional[RedisChangeRelay] = None
    try:
        redis = await init_redis()
        relay = RedisChangeRelay(feed, redis)
        await relay.start()
        logger.info("switchboard.redis_connected", url=settings.redis_url)
    except (RedisError, OSError) as e:
        logger.warning("switchboard.redis_unavailable", error=str(e))

    app.state.relay = relay
    yield

    logger.info("switchboard.shutdown")
    if relay is not None:
        await relay.stop()
    await close_redis()
    feed.close_all()
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="Switchboard",
        description="Live dispatch dashboard for support agents",
        version=__version__,
        lifespan=lifespan,
    )

    # Starlette middleware executes in reverse order of registration.
    # Request flow: RequestId → CORS → handler
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)

    app.include_router(api_router)
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: switchboard.main:app)
app = create_app()
