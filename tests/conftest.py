"""
Pytest fixtures for ThreadGate tests.
"""

import os

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Ensure test config is set before importing threadgate modules.
os.environ.setdefault("THREADGATE_ENV", "development")
os.environ.setdefault("THREADGATE_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("THREADGATE_BOT_LOGIN", "gigi")

from threadgate.db import base as db_base
from threadgate.db.base import Base
import threadgate.db.tables  # noqa: F401
from threadgate.engine.core import ThreadGateEngine
from threadgate.engine.summarizer import BasicSummarizer
from threadgate.services import Services

from fakes import BOT, OPS_CHAT, FakeHosting, FakeInspector, FakeNotifier, FakeWorker


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
async def db_engine(tmp_path):
    """
    File-backed SQLite per test, wired into threadgate.db.base.

    A file (not :memory:) so side-channel jobs opening their own sessions
    see the same data.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'threadgate.db'}")

    original_engine = db_base.engine
    original_factory = db_base.async_session_factory
    db_base.engine = engine
    db_base.async_session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()
    db_base.engine = original_engine
    db_base.async_session_factory = original_factory


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return db_base.async_session_factory


@pytest.fixture
async def session(session_factory):
    """Provide a database session per test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Services and engine
# ============================================================================


@pytest.fixture
def worker() -> FakeWorker:
    return FakeWorker()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def hosting() -> FakeHosting:
    return FakeHosting()


@pytest.fixture
def inspector() -> FakeInspector:
    return FakeInspector()


@pytest.fixture
async def services(session_factory, worker, notifier, hosting, inspector):
    services = Services(
        session_factory=session_factory,
        worker=worker,
        hosting=hosting,
        notifier=notifier,
        inspector=inspector,
        summarizer=BasicSummarizer(),
        operator_chat_id=OPS_CHAT,
        bot_login=BOT,
        dispatch_rules=[],
    )
    yield services
    await services.aclose()


@pytest.fixture
def engine(session, services) -> ThreadGateEngine:
    return ThreadGateEngine(session, services)


@pytest.fixture
async def client(services):
    """Async test client with the test services installed."""
    from threadgate.api.deps import get_services
    from threadgate.main import app

    app.state.services = services
    app.dependency_overrides[get_services] = lambda: services

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    app.state.services = None
