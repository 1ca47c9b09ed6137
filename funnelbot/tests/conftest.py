"""
Test configuration for funnelbot tests.

Environment is pinned BEFORE funnelbot is imported so the settings singleton
picks up an in-memory SQLite URL, no background tasks and no CRM.

Database fixtures build a fresh in-memory SQLite schema per test from the ORM
metadata (aiosqlite driver) — no Postgres or Redis needed.
"""
import os
import sys
from pathlib import Path

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RUN_BACKGROUND_TASKS"] = "false"
os.environ["CRM_URL"] = ""
os.environ["DEBUG"] = "false"
os.environ["REMINDER_TEST_MODE"] = "false"

_project_root = Path(__file__).parent.parent.parent   # repository root
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import funnelbot.models  # noqa: E402,F401
from funnelbot.database import Base  # noqa: E402
from funnelbot.scheduling.business_calendar import BusinessCalendar  # noqa: E402
from funnelbot.tests.helpers import RecordingTransport  # noqa: E402


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------

@pytest.fixture
def calendar() -> BusinessCalendar:
    """Default business calendar (settings defaults, 2025-2026 holidays)."""
    return BusinessCalendar.from_settings()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    """One AsyncSession for the whole test; tests flush, nothing is committed."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Transport double
# ---------------------------------------------------------------------------

@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()
