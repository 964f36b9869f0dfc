"""Async SQLAlchemy engine and session factory.

Learn: SQLAlchemy 2.0 async mode — create_async_engine for connection pooling,
AsyncSession for per-request database access, dependency injection via FastAPI.

Every session handed out here has the change-feed commit capture installed,
so whatever a request commits is fanned out to live dashboards in this
process without the services having to publish anything themselves.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from switchboard.config import settings
from switchboard.realtime.capture import CommitCapture
from switchboard.realtime.feed import feed

_pool_args = (
    {} if settings.database_url.startswith("sqlite")
    else {"pool_size": 5, "max_overflow": 15}
)

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    **_pool_args,
)

capture = CommitCapture(feed)

# Session factory: each request (or dashboard action) gets its own session.
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    sync_session_class=capture.session_class,
    expire_on_commit=False,
)


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency — the session factory (overridden in tests)."""
    return async_session_factory


async def get_db(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
) -> AsyncSession:
    """FastAPI dependency — yields a session per request, auto-closes."""
    async with sessions() as session:
        try:
            yield session
        finally:
            await session.close()
