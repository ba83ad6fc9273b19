"""
Database Initialization

Async SQLAlchemy engine and session factory for MarketPay, plus table
creation on startup.

Each connection runs SQLite in WAL mode with a busy timeout so that
concurrent requests (duplicate webhooks, double-clicked checkouts) wait
for the write lock instead of failing.
"""
import logging
from pathlib import Path
from typing import AsyncGenerator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..config import settings
from .models import Base

logger = logging.getLogger(__name__)


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    # Transactions are started explicitly in _begin_immediate
    dbapi_connection.isolation_level = None

    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")  # 30 second timeout
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def _begin_immediate(conn) -> None:
    # Writers queue on busy_timeout; no read-to-write lock upgrades
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for(database_url: str) -> AsyncEngine:
    """
    Create an async engine with the connection settings used everywhere.

    Args:
        database_url: SQLAlchemy URL (sqlite+aiosqlite:///...)

    Returns:
        Configured AsyncEngine
    """
    engine = create_async_engine(
        database_url,
        echo=False,
        connect_args={
            "timeout": 30,  # 30 second timeout for lock acquisition
            "check_same_thread": False
        },
        pool_pre_ping=True,
        pool_recycle=3600
    )
    event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)
    event.listen(engine.sync_engine, "begin", _begin_immediate)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


# ============================================================================
# Application-wide engine and session factory
# ============================================================================

engine = create_engine_for(settings.database_url)
AsyncSessionLocal = create_session_factory(engine)


async def initialize_database(target: Optional[AsyncEngine] = None) -> None:
    """
    Create all tables if they do not exist.

    Called during FastAPI startup; tests pass their own engine.
    """
    target = target or engine

    if target is engine:
        db_path = Path(settings.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initializing database at: {db_path}")

    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("All tables created successfully")


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting async database sessions in FastAPI.

    Usage:
        @router.get("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


# Alias for FastAPI Depends
get_db = get_async_session
