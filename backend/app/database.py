"""Database engines and session factories.

WHAT:
    Provides both sync and async SQLAlchemy engines and session factories
    for reading the transaction table and the precomputed relations.

WHY:
    - Sync sessions: Rollup / delta / slope / transaction reads (executor)
    - Async sessions: Legend bucket counts, one session per concurrent query

ARCHITECTURE:
    ┌──────────────────┐     ┌───────────────────┐
    │  Sync Engine     │     │  Async Engine     │
    │  (psycopg2)      │     │  (asyncpg)        │
    └────────┬─────────┘     └─────────┬─────────┘
             │                         │
    ┌────────▼─────────┐     ┌─────────▼─────────┐
    │  SessionLocal    │     │ AsyncSessionLocal │
    └────────┬─────────┘     └─────────┬─────────┘
             │                         │
    ┌────────▼─────────┐     ┌─────────▼─────────┐
    │ get_sync_session │     │ get_async_session │
    │ (executor)       │     │ SqlLegendSource   │
    └──────────────────┘     └───────────────────┘

USAGE:
    from app.database import get_sync_session
    from app.semantic.executor import fetch_rollup

    with get_sync_session() as db:
        rows = fetch_rollup(db, FilterState(year=2024))

    from app.database import AsyncSessionLocal
    from app.semantic.legend import QuantileLegendBuilder, SqlLegendSource

    legend = await QuantileLegendBuilder(SqlLegendSource(AsyncSessionLocal)).compute("avg_price_m2")

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/extensions/asyncio.html
    - app/config.py (DATABASE_URL)
"""

import logging
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncGenerator, Generator

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from app.config import get_settings

logger = logging.getLogger(__name__)


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_async_database_url(sync_url: str) -> str:
    """Convert a sync DATABASE_URL to the asyncpg driver prefix.

    Args:
        sync_url: Standard PostgreSQL URL (postgresql://)

    Returns:
        Async-compatible URL (postgresql+asyncpg://)
    """
    if sync_url.startswith("postgresql://"):
        return sync_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif sync_url.startswith("postgres://"):
        # Heroku-style URL
        return sync_url.replace("postgres://", "postgresql+asyncpg://", 1)
    return sync_url


DATABASE_URL = get_settings().DATABASE_URL
ASYNC_DATABASE_URL = _get_async_database_url(DATABASE_URL)


# =============================================================================
# SYNC ENGINE
# =============================================================================

# NOTE: SQLite engines (tests) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# =============================================================================
# ASYNC ENGINE (legend queries)
# =============================================================================

# Only initialized for PostgreSQL; percentile_cont and PostGIS are required
# by the legend queries anyway.
async_engine = None
AsyncSessionLocal = None
if ASYNC_DATABASE_URL.startswith("postgresql+asyncpg://"):
    async_engine = create_async_engine(
        ASYNC_DATABASE_URL,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
        echo=False,
    )

    AsyncSessionLocal = async_sessionmaker(
        bind=async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False,
    )
else:
    logger.info("[DATABASE] Async engine disabled for non-PostgreSQL URL")


# =============================================================================
# CONTEXT MANAGERS
# =============================================================================

@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sync sessions.

    Example:
        with get_sync_session() as db:
            rows = fetch_slopes(db, SlopeParams())
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Context manager for async sessions.

    Raises:
        RuntimeError: If DATABASE_URL is not a PostgreSQL URL
    """
    if AsyncSessionLocal is None:
        raise RuntimeError("Async sessions require a PostgreSQL DATABASE_URL")
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
