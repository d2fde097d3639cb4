"""Shared test fixtures for the tip ledger test suite.

Uses an in-memory SQLite database with StaticPool so all sessions share the
same connection (committed data is visible across sessions).  Race tests
that need truly independent connections use ``race_sessions``, a file
database in ``tmp_path``.
"""

import uuid

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tipledger import database
from tipledger.core.async_tasks import drain_background_tasks, expiry_scheduler
from tipledger.database import Base, get_db
from tipledger.main import app
from tipledger.models import *  # noqa: ensure all models are loaded for create_all
from tipledger.services import events

# ---------------------------------------------------------------------------
# In-memory SQLite test engine (shared via StaticPool)
# ---------------------------------------------------------------------------

test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)
TestSession = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


def _set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


event.listen(test_engine.sync_engine, "connect", _set_sqlite_pragma)


# ---------------------------------------------------------------------------
# Auto-use: create/drop tables for every test
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
async def _setup_db(monkeypatch):
    """Create all tables before each test, drop after. Also clear global state."""
    # Background jobs (timers, streaks) open their own sessions
    monkeypatch.setattr(database, "async_session", TestSession)
    events.clear_subscribers()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await expiry_scheduler.shutdown()
    await drain_background_tasks()
    events.clear_subscribers()
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def db():
    """Yield a fresh AsyncSession for direct service-layer tests."""
    async with TestSession() as session:
        yield session


@pytest.fixture
async def client():
    """httpx AsyncClient wired to the FastAPI app with test DB override."""
    import httpx

    async def _override_get_db():
        async with TestSession() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
async def race_sessions(tmp_path):
    """Sessionmaker over a file database: one real connection per session."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}", echo=False)
    event.listen(engine.sync_engine, "connect", _set_sqlite_pragma)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await drain_background_tasks()
    await engine.dispose()


# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def auth_header():
    """Return a callable that builds an Authorization header for a role."""
    from tipledger.core.auth import create_access_token

    def _build(role: str = "service", client_id: str = "test-bot") -> dict:
        return {"Authorization": f"Bearer {create_access_token(client_id, role)}"}
    return _build


# ---------------------------------------------------------------------------
# Seeding helpers
# ---------------------------------------------------------------------------

def _new_address() -> str:
    return "0x" + uuid.uuid4().hex + uuid.uuid4().hex[:8]


async def _create_token(
    session: AsyncSession, symbol: str = "PENGU", decimals: int = 6, *, address: str | None = None, **overrides,
):
    """Register a token and hand back a detached copy.

    A failed unit of work rolls the session back and expires every instance
    it holds; a detached token keeps its loaded attributes for the test.
    """
    from tipledger.services.token_registry import register_token

    token = await register_token(
        session, address=address or _new_address(), symbol=symbol, decimals=decimals, **overrides,
    )
    session.expunge(token)
    return token


async def _deposit(session: AsyncSession, user_id: str, token, amount_atomic: int) -> dict:
    from tipledger.services.deposit_service import apply_deposit

    return await apply_deposit(
        session, user_id, token.id, amount_atomic,
        source_tx="0x" + uuid.uuid4().hex, payer="0xpayer",
    )


@pytest.fixture
def make_token(db: AsyncSession):
    """Factory fixture: register a token (6 decimals unless told otherwise)."""
    async def _make(symbol: str = "PENGU", decimals: int = 6, *, session: AsyncSession | None = None, **overrides):
        return await _create_token(session or db, symbol, decimals, **overrides)
    return _make


@pytest.fixture
def fund(db: AsyncSession):
    """Factory fixture: credit a user through a deposit so conservation holds."""
    async def _fund(user_id: str, token, amount_atomic: int, *, session: AsyncSession | None = None) -> dict:
        return await _deposit(session or db, user_id, token, amount_atomic)
    return _fund


@pytest.fixture
async def pengu(make_token):
    return await make_token("PENGU")


@pytest.fixture
async def wei(make_token):
    """18-decimal token: realistic balances exceed 2**53 atomic units."""
    return await make_token("WEI", 18)
