"""
SQLAlchemy 2.0 Database Configuration

Async engine and session factory plus the declarative base shared by all
billing tables.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote_plus

import structlog
from sqlalchemy import DateTime, TypeDecorator, text
from sqlalchemy.engine import Dialect
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from subs.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

# ==========================================
# Database URLs from settings
# ==========================================


def get_async_database_url(settings: Settings | None = None) -> str:
    """Get the async database URL from settings."""
    settings = settings or get_settings()
    if settings.database.url:
        url = settings.database.url
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("sqlite://"):
            return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return url

    # In development, use SQLite if PostgreSQL is not configured
    if (settings.is_development or settings.is_testing) and not settings.database.password:
        return "sqlite+aiosqlite:///./subs_dev.sqlite"

    username = quote_plus(settings.database.username)
    password = quote_plus(settings.database.password) if settings.database.password else ""
    host = settings.database.host
    port = settings.database.port
    database = settings.database.database

    return f"postgresql+asyncpg://{username}:{password}@{host}:{port}/{database}"


# ==========================================
# SQLAlchemy 2.0 Declarative Base
# ==========================================


class Base(DeclarativeBase):
    """Base class for all database models using SQLAlchemy 2.0 declarative mapping."""

    pass


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware datetime that always round-trips as UTC.

    SQLite drops tzinfo on the way back; values are re-tagged as UTC on load so
    comparisons with ``datetime.now(UTC)`` stay valid on every backend.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: Any, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def utcnow() -> datetime:
    """Current time in UTC."""
    return datetime.now(UTC)


# ==========================================
# Engine and Session Management
# ==========================================


def create_engine_from_settings(settings: Settings | None = None) -> AsyncEngine:
    """Create the asynchronous engine described by settings."""
    settings = settings or get_settings()
    url = get_async_database_url(settings)
    options: dict[str, Any] = {"echo": settings.database.echo}
    if not url.startswith("sqlite"):
        options.update(
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow,
            pool_pre_ping=settings.database.pool_pre_ping,
        )
    return create_async_engine(url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory used by the subscription store."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Transactional scope: commit on success, roll back on error."""
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ==========================================
# Database Initialization
# ==========================================


async def create_all_tables(engine: AsyncEngine) -> None:
    """Create all tables in the database asynchronously."""
    # Register billing tables on the metadata
    import subs.billing.subscriptions.entities  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_database_health(session_factory: async_sessionmaker[AsyncSession]) -> bool:
    """Check if the database is accessible."""
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("database.health_check.failed", error=str(e))
        return False


__all__ = [
    "Base",
    "UTCDateTime",
    "utcnow",
    "get_async_database_url",
    "create_engine_from_settings",
    "create_session_factory",
    "session_scope",
    "create_all_tables",
    "check_database_health",
]
