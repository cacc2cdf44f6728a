"""Database configuration and session management."""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from expense_tracker.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""

    pass


def _install_sqlite_listeners(async_engine: AsyncEngine) -> None:
    """Enable foreign keys and let SQLAlchemy drive BEGIN so SAVEPOINTs work on pysqlite."""

    @event.listens_for(async_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(async_engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async engine, applying dialect-specific setup.

    PostgreSQL engines get a sized connection pool; SQLite engines get the
    listeners required for nested transactions and foreign key enforcement.
    """
    is_sqlite = make_url(url).get_backend_name() == "sqlite"
    if not is_sqlite:
        kwargs.setdefault("pool_pre_ping", True)
        kwargs.setdefault("pool_size", 10)
        kwargs.setdefault("max_overflow", 20)
        kwargs.setdefault("pool_recycle", 3600)

    async_engine = create_async_engine(url, echo=settings.debug, **kwargs)
    if is_sqlite:
        _install_sqlite_listeners(async_engine)
    return async_engine


engine = build_engine(settings.database_url)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Test hook to override session maker
_test_session_maker: async_sessionmaker[AsyncSession] | None = None


def set_test_session_maker(
    maker: async_sessionmaker[AsyncSession] | None,
) -> async_sessionmaker[AsyncSession] | None:
    """Set test session maker and return the previous value."""
    global _test_session_maker
    previous = _test_session_maker
    _test_session_maker = maker
    return previous


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for database session."""
    maker = _test_session_maker or async_session_maker
    async with maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """Create missing tables.

    Production schemas are expected to be provisioned ahead of time; this
    only fills gaps for local SQLite databases.
    """
    from expense_tracker import models  # noqa: F401
    from expense_tracker.logger import get_logger

    logger = get_logger(__name__)
    if engine.dialect.name == "sqlite":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized", dialect="sqlite", tables=len(Base.metadata.tables))
    else:
        logger.info("Database initialized (schema managed externally)", dialect=engine.dialect.name)
