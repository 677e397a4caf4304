"""
Database engines for the authoritative store and the local queue database.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from fieldsync.db.models import QUEUE_TABLES, STORE_TABLES

from .config import settings

logger = logging.getLogger(__name__)


def _is_memory_sqlite(url: str) -> bool:
    parsed = make_url(url)
    return parsed.get_backend_name() == "sqlite" and parsed.database in (None, "", ":memory:")


def create_engine(url: str, echo: bool = False, pool_pre_ping: bool = True) -> AsyncEngine:
    """
    Create an async engine.

    In-memory SQLite databases use a single shared connection so every
    session sees the same data.
    """
    kwargs = {"echo": echo, "future": True}
    if _is_memory_sqlite(url):
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    elif make_url(url).get_backend_name() != "sqlite":
        kwargs["pool_pre_ping"] = pool_pre_ping
    return create_async_engine(url, **kwargs)


def create_store_engine(url: Optional[str] = None) -> AsyncEngine:
    """Create the engine for the authoritative store."""
    return create_engine(
        url or settings.database.url,
        echo=settings.database.echo,
        pool_pre_ping=settings.database.pool_pre_ping,
    )


def create_queue_engine(url: Optional[str] = None) -> AsyncEngine:
    """Create the engine for the local durable queue."""
    return create_engine(url or settings.queue.database_url)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent additional queries after commit
        autoflush=False,
    )


async def init_store_schema(engine: AsyncEngine) -> None:
    """Create store tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all, tables=STORE_TABLES)
    logger.info("Store schema ready")


async def init_queue_schema(engine: AsyncEngine) -> None:
    """Create the local queue table if it does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all, tables=QUEUE_TABLES)
    logger.info("Queue schema ready")


@asynccontextmanager
async def session_scope(factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """
    Session with commit on success and rollback on error.
    """
    async with factory() as session:
        try:
            yield session
            if session.in_transaction():
                await session.commit()
        except Exception:
            await session.rollback()
            raise
