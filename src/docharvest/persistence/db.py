"""
Database engine and session helpers.

Engines are created per store instance rather than held globally, so each
orchestrator owns its own connection pool.
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base

DEFAULT_DATABASE_URL = "sqlite:///data/docharvest.db"


# =============================================================================
# SQLite Configuration
# =============================================================================


def _configure_sqlite(engine: AsyncEngine) -> None:
    """Configure SQLite for better performance and reliability.

    Enables:
    - Foreign key enforcement
    - WAL mode for better concurrency
    - Synchronous mode for durability
    """
    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()


def get_async_url(url: str) -> str:
    """Convert sync database URL to async variant.

    SQLite: sqlite:/// -> sqlite+aiosqlite:///
    PostgreSQL: postgresql:// -> postgresql+asyncpg://
    """
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    elif url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def _ensure_sqlite_dir(url: str) -> None:
    for prefix in ("sqlite:///", "sqlite+aiosqlite:///"):
        if url.startswith(prefix):
            db_path = url[len(prefix):]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            return


# =============================================================================
# Engine Creation
# =============================================================================


def create_engine_for(url: str = DEFAULT_DATABASE_URL, echo: bool = False) -> AsyncEngine:
    """Create an async engine for ``url``.

    Args:
        url: SQLAlchemy database URL (converted to its async driver)
        echo: Whether to log SQL statements

    Returns:
        SQLAlchemy AsyncEngine instance
    """
    _ensure_sqlite_dir(url)
    async_url = get_async_url(url)

    if async_url.startswith("sqlite"):
        engine = create_async_engine(async_url, echo=echo)
        _configure_sqlite(engine)
    else:
        engine = create_async_engine(
            async_url,
            echo=echo,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables if they don't exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
