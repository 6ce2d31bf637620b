"""Async engine and session helpers.

The engine is built from ``Settings.database_url`` at application startup and
stored on ``app.state``; routes obtain an :class:`AsyncSession` through
:func:`get_session`. Schema creation is handled by :func:`init_models`.
"""

from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..models import Base
from ..obs import add_query_logger


def build_engine(url: str, label: str = "main") -> AsyncEngine:
    """Create an :class:`AsyncEngine` for ``url`` with query logging attached."""

    engine = create_async_engine(url)
    add_query_logger(engine, label)
    return engine


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` from the application's session factory."""

    sessionmaker = request.app.state.sessionmaker
    async with sessionmaker() as session:
        yield session


__all__ = ["build_engine", "make_sessionmaker", "init_models", "get_session"]
