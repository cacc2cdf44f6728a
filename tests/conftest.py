"""Test fixtures and configuration."""

import logging
import os
import sys

import pytest
import pytest_asyncio
import structlog
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Settings are read at import time; point them at SQLite before the package loads
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "testing"
os.environ.setdefault("DEBUG", "false")

from expense_tracker import database  # noqa: E402
from expense_tracker import models  # noqa: E402, F401
from expense_tracker.database import Base, build_engine  # noqa: E402


# --- Structlog Configuration for Tests ---
@pytest.fixture(autouse=True, scope="session")
def configure_structlog_for_tests():
    """Configure structlog for proper capsys capture in tests."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(),
        foreign_pre_chain=processors[:-1],
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG)

    yield

    structlog.reset_defaults()


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """File-backed SQLite database with a fresh schema per test.

    A file (rather than ``:memory:``) lets the API client and the test session
    use separate connections against the same data. WAL keeps a reading test
    session from blocking writes made through the API.
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'expense_tracker.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_wal(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db(session_maker):
    """Session on the per-test database. Services flush; tests commit when the API must see the data."""
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_maker):
    """HTTP client bound to the FastAPI app and the per-test database."""
    from expense_tracker.main import app

    previous = database.set_test_session_maker(session_maker)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    database.set_test_session_maker(previous)
