"""Async SQLAlchemy engine, session factory and declarative base."""

from functools import lru_cache
from typing import AsyncIterator, Any

from sqlalchemy import JSON
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine, AsyncEngine
from sqlalchemy.orm import DeclarativeBase

from app.core.config import get_settings

# JSONB in production, plain JSON where the dialect has no JSONB (tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for all models."""


def _async_url(url: str) -> str:
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


@lru_cache
def get_engine() -> AsyncEngine:
    settings = get_settings()
    return create_async_engine(
        _async_url(settings.database_url),
        pool_pre_ping=True,
        echo=False,
    )


@lru_cache
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(), expire_on_commit=False)


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request, rolled back on error."""
    async with get_sessionmaker()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


def insert_ignoring_conflicts(
    db: AsyncSession,
    model: Any,
    rows: list[dict[str, Any]] | dict[str, Any],
    index_elements: list[str],
):
    """INSERT ... ON CONFLICT DO NOTHING for the session's dialect.

    Rows are keyed by column name. ``result.rowcount`` on the executed
    statement is the number of rows actually inserted.
    """
    dialect = db.get_bind().dialect.name
    insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
    return insert(model.__table__).values(rows).on_conflict_do_nothing(index_elements=index_elements)
