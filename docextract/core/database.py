"""
Async SQLAlchemy engine and session management for the extraction store.

PostgreSQL (asyncpg) in production, SQLite (aiosqlite) for local runs and tests.
The gateway opens one short session per operation from the shared factory.
"""

import logging
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for documents, field definitions and extracted values."""
    pass


def resolve_database_url(url: str) -> str:
    """Pin the async driver for bare postgres / sqlite URLs."""
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    if url.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + url[len("sqlite://"):]
    return url


def is_sqlite_url(url: str) -> bool:
    return url.startswith("sqlite")


def engine_options(url: str, debug: bool = False) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": debug}
    # SQLite doesn't support pool_size / max_overflow
    if not is_sqlite_url(url):
        options.update(pool_size=20, max_overflow=10, pool_pre_ping=True)
    return options


def enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    """SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection."""

    @event.listens_for(engine.sync_engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# Lazy globals, initialized on first call to get_engine()
_engine = None
_session_factory = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        url = resolve_database_url(settings.database_url)

        _engine = create_async_engine(url, **engine_options(url, settings.debug))
        if is_sqlite_url(url):
            enable_sqlite_foreign_keys(_engine)
        logger.info("Database engine created (%s)", _engine.dialect.name)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        # Rows outlive their session: the orchestrator reads ids and names after commit
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def init_db():
    """Create the extraction tables if missing. Called on startup."""
    engine = get_engine()
    async with engine.begin() as conn:
        # Registers documents, document_fields and extracted_data with Base.metadata
        from .. import models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Extraction tables created/verified")


async def close_db():
    """Dispose engine. Called on shutdown."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database engine disposed")
