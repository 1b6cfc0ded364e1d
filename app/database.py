"""Database engine, session factory and declarative base.

The engine and session factory are built by the composition root
(``app.container``) and handed to each component; nothing here opens a
connection at import time.
"""

from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base for all models."""


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create the async engine for ``database_url``."""
    kwargs: dict = {"echo": echo}
    if not database_url.startswith("sqlite"):
        kwargs["pool_pre_ping"] = True
    return create_async_engine(database_url, **kwargs)


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory shared by request handlers, services and workers."""
    return async_sessionmaker(engine, expire_on_commit=False)


def upsert(db: AsyncSession, model):
    """Return a dialect-specific ``INSERT`` supporting ``on_conflict_*``.

    PostgreSQL in production, SQLite in tests; both expose the same
    ``on_conflict_do_update(index_elements=..., set_=...)`` API.
    """
    if db.get_bind().dialect.name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session from the app's container."""
    session_maker = request.app.state.container.session_maker
    async with session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
