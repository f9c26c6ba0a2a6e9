"""
Global pytest configuration and fixtures for the billing service tests.

Every test runs against a fresh in-memory SQLite database through
aiosqlite; no external services are required.
"""

import os

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

# Keep tests independent of any local .env database or Stripe keys
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")

from subs.db import create_all_tables, create_session_factory  # noqa: E402
from subs.events import reset_event_bus  # noqa: E402
from subs.settings import reset_settings  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Reset process-wide settings and event bus between tests."""
    reset_settings()
    reset_event_bus()
    yield
    reset_settings()
    reset_event_bus()


@pytest_asyncio.fixture
async def async_db_engine():
    """In-memory SQLite engine with all billing tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_all_tables(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(async_db_engine):
    return create_session_factory(async_db_engine)
