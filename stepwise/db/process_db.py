from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel

from . import models  # noqa: F401  registers tables on SQLModel.metadata


def normalize_database_url(database_url: str) -> str:
    """Map plain database URLs onto their async driver variants."""
    if database_url.startswith("postgres://"):
        return "postgresql+asyncpg://" + database_url[len("postgres://"):]
    if database_url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + database_url[len("postgresql://"):]
    if database_url.startswith("sqlite://") and not database_url.startswith("sqlite+"):
        return "sqlite+aiosqlite://" + database_url[len("sqlite://"):]
    return database_url


class ProcessDB:
    """Async engine and session helper for the process tables."""

    def __init__(self, database_url: str) -> None:
        self.url = normalize_database_url(database_url)
        connect_args = {"check_same_thread": False} if self.url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            self.url, echo=False, future=True, connect_args=connect_args
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    async def dispose(self) -> None:
        await self.engine.dispose()
