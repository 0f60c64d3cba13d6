"""
Async SQLAlchemy setup для SqlRequestStore.

Использование:
    from stablepay.infrastructure.db.base import make_engine, make_sessionmaker, session_ctx

    engine = make_engine("sqlite+aiosqlite:///./stablepay.db")
    sessions = make_sessionmaker(engine)
    async with session_ctx(sessions) as s:
        ...
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def make_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    url = url.replace("postgresql://", "postgresql+asyncpg://")
    kwargs = {"echo": echo, "future": True}
    if not url.startswith("sqlite"):
        kwargs["pool_pre_ping"] = True
    return create_async_engine(url, **kwargs)


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False,
        class_=AsyncSession,
    )


@asynccontextmanager
async def session_ctx(sessions: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Контекстный менеджер с авто-commit/rollback."""
    session: AsyncSession = sessions()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


__all__ = ["Base", "make_engine", "make_sessionmaker", "session_ctx"]
