"""
Database configuration and session management.

SQLite (development/tests) and PostgreSQL (production) are both supported.
All statements used by the security services are portable between them:
conditional UPDATE/DELETE with rowcount checks, func.now(), and plain
B-tree indexes. SQLite requires PRAGMA foreign_keys=ON per connection.
"""

import asyncio
import logging

from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

# Failures of the database or its connection; asyncpg surfaces refused and
# timed-out connections as raw OSError or TimeoutError
DB_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


def normalize_database_url(url: str) -> str:
    """Rewrite a plain PostgreSQL URL to use the asyncpg driver."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


database_url = normalize_database_url(settings.DATABASE_URL)
is_sqlite = database_url.startswith("sqlite")

engine_kwargs: dict = {
    "echo": False,
}

if not is_sqlite:
    # Verify pooled connections after DB restarts; 5 + 10 overflow suits a
    # single API worker.
    engine_kwargs["pool_pre_ping"] = True
    engine_kwargs["pool_size"] = 5
    engine_kwargs["max_overflow"] = 10

engine = create_async_engine(database_url, **engine_kwargs)


def enable_sqlite_foreign_keys(async_engine) -> None:
    """SQLite does not enforce foreign keys unless enabled per connection."""

    @event.listens_for(async_engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


if is_sqlite:
    enable_sqlite_foreign_keys(engine)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    pass


async def init_db():
    """Create all tables that do not exist yet."""
    # Import models so they register on Base.metadata
    from models import (  # noqa: F401
        audit_log,
        failed_login,
        mfa_backup_code,
        session,
        user,
    )

    async with engine.begin() as conn:
        # PostgreSQL: serialize concurrent worker startup
        if not is_sqlite:
            await conn.execute(text("SELECT pg_advisory_xact_lock(1)"))
            logger.info("Acquired database migration lock")

        await conn.run_sync(Base.metadata.create_all, checkfirst=True)

    logger.info("Database initialized successfully")
