"""
Async SQLAlchemy engine and session factory.
The engine is created on first use so importing the package never opens a pool.
"""

from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from ledgerline.config import settings


class Base(DeclarativeBase):
    pass


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def build_engine(url: str, **kwargs) -> AsyncEngine:
    """Create an engine; pool sizing only applies to server databases."""
    options = {"echo": settings.DB_ECHO, **kwargs}
    if not url.startswith("sqlite"):
        options.setdefault("pool_size", settings.DB_POOL_SIZE)
        options.setdefault("max_overflow", settings.DB_MAX_OVERFLOW)
        options.setdefault("pool_pre_ping", True)
    return create_async_engine(url, **options)


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(settings.DATABASE_URL)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield an async DB session."""
    async with get_session_factory()() as session:
        yield session


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create tables that do not exist yet."""
    # tables must be imported so they register on Base.metadata
    from ledgerline.models import tables  # noqa: F401

    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
