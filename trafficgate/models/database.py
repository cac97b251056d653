"""Async database engine and session management."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from trafficgate.config import get_settings
from trafficgate.models.tables import Base

import structlog

logger = structlog.get_logger()

# Built on first use so the gate, its tests and tooling can import the
# models without a reachable database.
_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker | None = None


def get_db_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            echo=settings.debug,
        )
    return _engine


def get_session_maker() -> async_sessionmaker:
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(
            get_db_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_maker


async def get_db() -> AsyncSession:
    """FastAPI dependency — one session per gate request (policy read only)."""
    async with get_session_maker()() as session:
        yield session


async def create_schema() -> None:
    """Create any missing tables. Development databases only; existing tables are left as-is."""
    async with get_db_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_schema_ready", tables=sorted(Base.metadata.tables))


async def dispose_engine() -> None:
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_maker = None
