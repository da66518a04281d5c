"""Database engine and session management.

Engines and session factories are built explicitly and handed to the
application (``app.state.session_maker``), the Celery tasks and the scripts,
so tests can run every component against their own database.
"""

from typing import AsyncIterator, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


def create_engine(database_url: Optional[str] = None, **kwargs) -> AsyncEngine:
    """Create an async engine.

    Args:
        database_url: SQLAlchemy URL, defaults to ``settings.DATABASE_URL``
        **kwargs: Extra engine options

    Returns:
        AsyncEngine instance
    """
    url = database_url or settings.DATABASE_URL
    if url.startswith("postgresql"):
        kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(url, echo=False, **kwargs)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to an engine."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a session from the app's session factory."""
    session_maker: async_sessionmaker[AsyncSession] = request.app.state.session_maker
    async with session_maker() as session:
        yield session
