"""Database session management using SQLModel + async SQLAlchemy."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from gitferry.config import get_settings

# Registers the tables on SQLModel.metadata
from gitferry.database import models  # noqa: F401


settings = get_settings()


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    kwargs: dict[str, Any] = {"echo": echo}
    if database_url.startswith("sqlite"):
        # Runs write from concurrent tasks; wait for the lock instead of failing
        kwargs["connect_args"] = {"timeout": 30}
    else:
        kwargs["pool_size"] = settings.database_pool_size
        kwargs["max_overflow"] = settings.database_max_overflow
        kwargs["pool_pre_ping"] = True
    return create_async_engine(database_url, **kwargs)


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# Create async engine
engine = build_engine(settings.database_url, echo=settings.debug)

# Session factory
async_session_maker = build_session_maker(engine)


async def init_db(target: AsyncEngine | None = None) -> None:
    """Initialize database tables.

    Note: In production, use migrations instead.
    This is here for development convenience.
    """
    async with (target or engine).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def close_db(target: AsyncEngine | None = None) -> None:
    """Close database connections."""
    await (target or engine).dispose()


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session that commits on success."""
    async with (factory or async_session_maker)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
