"""Test fixtures — a fresh database and a fresh change feed per test.

Learn: Testing pattern for async SQLAlchemy + FastAPI + the change feed:

1. Each test gets its own engine on a throwaway SQLite file (aiosqlite),
   with the schema created from the models. Set
   SWITCHBOARD_TEST_DATABASE_URL to run against Postgres instead; the
   tables are dropped and recreated per test.
2. Each test gets its own ChangeFeed, and a session factory with commit
   capture installed on it. Whatever a test commits is published to that
   feed exactly like in the app.
3. API tests point the app's `get_sessionmaker` at the same factory, so
   HTTP calls and live dashboards share one database and one feed.

Savepoint rollback (the usual trick) doesn't work here: the dashboard
opens a new session per action, and commit capture needs real commits.
"""

import itertools
import os
import tempfile
import uuid
from datetime import timedelta

# Must be set before switchboard.config is imported anywhere.
os.environ.setdefault("SWITCHBOARD_ENVIRONMENT", "test")
os.environ.setdefault(
    "SWITCHBOARD_DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'switchboard-app.db')}",
)

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from switchboard.auth.dependencies import get_current_agent
from switchboard.auth.identity import PasswordIdentityProvider
from switchboard.auth.password import hash_password
from switchboard.db.engine import get_sessionmaker
from switchboard.db.models import Agent, Base, utcnow
from switchboard.main import app
from switchboard.realtime.capture import CommitCapture
from switchboard.realtime.feed import ChangeFeed
from switchboard.services.conversation_store import ConversationStore
from switchboard.services.dashboard import Dashboard
from switchboard.services.session_context import StaffIdentity

PASSWORD = "correct-horse"


# ═══════════════════════════════════════════════════════════
# Database + feed
# ═══════════════════════════════════════════════════════════


@pytest_asyncio.fixture()
async def engine(tmp_path):
    url = (
        os.environ.get("SWITCHBOARD_TEST_DATABASE_URL")
        or f"sqlite+aiosqlite:///{tmp_path / 'switchboard.db'}"
    )
    engine = create_async_engine(url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def feed():
    feed = ChangeFeed()
    yield feed
    feed.close_all()


@pytest.fixture
def sessions(engine, feed):
    """Session factory publishing every commit to the test's feed."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        sync_session_class=CommitCapture(feed).session_class,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture()
async def db(sessions):
    async with sessions() as session:
        yield session


# ═══════════════════════════════════════════════════════════
# Data builders
# ═══════════════════════════════════════════════════════════


@pytest.fixture
def make_agent(sessions):
    """Create an agent row. Low bcrypt cost keeps the suite fast."""

    async def _make(name="Alice", email=None, role="agent", password=PASSWORD):
        async with sessions() as db:
            agent = Agent(
                email=email or f"{name.lower()}@example.com",
                name=name,
                role=role,
                password_hash=hash_password(password, rounds=4),
            )
            db.add(agent)
            await db.commit()
            return agent

    return _make


@pytest.fixture
def make_conversation(sessions):
    """Create a queued conversation, `minutes_ago` minutes since last activity."""
    codes = itertools.count(100001)

    async def _make(client_name=None, display_code=None, minutes_ago=0, client_id=None):
        async with sessions() as db:
            return await ConversationStore(db).create(
                client_id=client_id or uuid.uuid4(),
                display_code=display_code or str(next(codes)),
                client_name=client_name,
                last_activity=utcnow() - timedelta(minutes=minutes_ago),
            )

    return _make


@pytest.fixture
def make_dashboard(sessions, feed):
    def _make():
        return Dashboard(sessions, feed, PasswordIdentityProvider(sessions))

    return _make


def staff_of(agent: Agent) -> StaffIdentity:
    return StaffIdentity(id=agent.id, name=agent.name, email=agent.email, role=agent.role)


# ═══════════════════════════════════════════════════════════
# HTTP clients
# ═══════════════════════════════════════════════════════════


@pytest_asyncio.fixture()
async def staff(make_agent):
    """The agent the `client` fixture is authenticated as."""
    return await make_agent(name="Dana")


@pytest_asyncio.fixture()
async def client(sessions, staff):
    """HTTP client with the session factory and auth overridden.

    Learn: get_current_agent is overridden to return a real agent row's
    identity, so protected routes work without minting tokens and the
    queue engine still finds the agent it updates.
    """
    app.dependency_overrides[get_sessionmaker] = lambda: sessions
    app.dependency_overrides[get_current_agent] = lambda: staff_of(staff)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def unauthenticated_client(sessions):
    """HTTP client WITHOUT the auth override — for real login/token flows."""
    app.dependency_overrides[get_sessionmaker] = lambda: sessions

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
