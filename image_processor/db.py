"""Database engine and session management."""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

# Base class for models
Base = declarative_base()


def create_engine(dsn: str) -> AsyncEngine:
    """Create an async engine for a normalized DSN."""
    kwargs = {}
    if not dsn.startswith("sqlite"):
        kwargs.update(pool_size=10, max_overflow=5, pool_pre_ping=True)
    return create_async_engine(
        dsn,
        echo=False,  # Set to True for SQL debugging
        future=True,
        **kwargs,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create an async session factory bound to an engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    # Import registers the models on Base.metadata
    from image_processor import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class Database:
    """Master engine for writes plus an optional read replica."""

    def __init__(self, master_dsn: str, slave_dsn: Optional[str] = None):
        self.master = create_engine(master_dsn)
        self.replica = create_engine(slave_dsn) if slave_dsn else None
        self.write_session = create_session_factory(self.master)
        self.read_session = create_session_factory(self.replica or self.master)

    async def dispose(self) -> None:
        await self.master.dispose()
        if self.replica is not None:
            await self.replica.dispose()
