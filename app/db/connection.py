"""
Database engine and sessions.

SQLite (development, tests) shares one in-memory connection through
StaticPool; MySQL/PostgreSQL (production) get a pinged, recycled pool.

Every unit of work (an API request, one tour sweep, a CLI command, the
bootstrap admin) runs in a session that commits when the work succeeds and
rolls back when it raises. Services only flush.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import settings
from app.db.models import Base

logger = logging.getLogger(__name__)

# set by init_db
engine = None
async_session_maker = None


def _engine_options(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {"pool_pre_ping": True, "pool_recycle": 3600}


async def init_db(database_url: Optional[str] = None):
    """Create the engine and session factory, then any missing tables."""
    global engine, async_session_maker

    database_url = database_url or settings.database_url
    logger.info(f"Initializing database: {database_url.split('://')[0]}")

    engine = create_async_engine(database_url, echo=False, **_engine_options(database_url))
    async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("✅ Database initialized successfully")


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """
    One unit of work: commit on success, rollback when the block raises.

    Raises:
        RuntimeError: init_db() has not run
    """
    if async_session_maker is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with async_session_maker() as session:
        try:
            yield session
        except Exception as e:
            await session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        await session.commit()


async def get_db_session() -> AsyncIterator[AsyncSession]:
    """
    FastAPI dependency: one session_scope() per request.

        @router.get("/sols/{sol_id}")
        async def get_sol(sol_id: int, db: AsyncSession = Depends(get_db_session)):
            ...

    Routes never commit themselves; an error response rolls the request back.
    """
    async with session_scope() as session:
        yield session


async def check_db_connection() -> bool:
    """Run SELECT 1 against the engine (used by /health/db)."""
    if engine is None:
        return False
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


async def close_db():
    global engine, async_session_maker
    if engine:
        await engine.dispose()
        logger.info("Database connection closed")
    engine = None
    async_session_maker = None
