# appointment_scheduler/db/session.py

from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool


# Declarative Base: all models inherit from this
class Base(DeclarativeBase):
    pass


def build_engine(url: str, **kwargs) -> AsyncEngine:
    """One engine (and pool) per process, created at startup and disposed at shutdown."""
    if url.startswith("sqlite"):
        if ":memory:" in url:
            # In-memory SQLite lives per connection: share a single one
            kwargs.setdefault("poolclass", StaticPool)
            kwargs.setdefault("connect_args", {"check_same_thread": False})
        return create_async_engine(url, **kwargs)
    return create_async_engine(
        url,
        pool_pre_ping=True,   # avoids stale connection errors
        pool_size=kwargs.pop("pool_size", 20),
        **kwargs,
    )


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Short-lived sessions per request
    return async_sessionmaker(
        engine,
        expire_on_commit=False,  # keep objects usable after commit
        class_=AsyncSession,
    )


# FastAPI dependency: yields a session from the app's factory and closes it safely
async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.sessionmaker
    async with session_factory() as session:
        yield session
