"""
Async SQLite database connection for Cowork.

Uses SQLAlchemy async with aiosqlite for non-blocking database operations.
The engine is built from a URL so tests can swap in an in-memory database.
"""
import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from ..config import DATA_DIR

logger = logging.getLogger(__name__)

DATABASE_PATH: Path = DATA_DIR / "cowork.db"

# SQLAlchemy async engine (SQLite with aiosqlite driver)
DATABASE_URL = f"sqlite+aiosqlite:///{DATABASE_PATH}"


class Base(DeclarativeBase):
    """Base class for SQLAlchemy ORM models."""
    pass


def create_engine(database_url: str = DATABASE_URL) -> AsyncEngine:
    """
    Create an async engine with SQLite foreign keys enforced.

    Args:
        database_url: SQLAlchemy URL, e.g. sqlite+aiosqlite:///:memory:.
    """
    engine = create_async_engine(
        database_url,
        echo=False,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to an engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = create_engine()

# Session factory for dependency injection
AsyncSessionLocal = create_session_factory(engine)


async def init_db(db_engine: Optional[AsyncEngine] = None) -> None:
    """
    Initialize the database.

    Creates the database directory and all tables if they don't exist.

    Args:
        db_engine: Engine to initialize. Defaults to the module engine.
    """
    target = db_engine or engine
    if target is engine:
        DATA_DIR.mkdir(parents=True, exist_ok=True)

    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info(f"Database initialized at {target.url}")

