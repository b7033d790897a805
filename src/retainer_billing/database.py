"""Database connection and session management."""

from __future__ import annotations

import zlib
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from retainer_billing.config import get_settings

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


def get_engine() -> AsyncEngine:
    """Create async database engine."""
    settings = get_settings()
    return create_async_engine(
        settings.database_url,
        echo=False,
        pool_pre_ping=True,
    )


# Global engine and session factory
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_db() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Initialize database engine and session factory."""
    global _engine, _session_factory
    if _engine is None:
        _engine = get_engine()
        _session_factory = async_sessionmaker(
            _engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _engine, _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get a database session.

    The session is one unit of work: it commits when the block exits cleanly
    and rolls back every write made inside it when an exception escapes.
    """
    _, factory = init_db()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def lock_key(*parts: object) -> int:
    """Derive a stable signed 32-bit advisory lock key."""
    raw = ":".join(str(p) for p in parts).encode()
    key = zlib.crc32(raw)
    return key - (1 << 32) if key >= (1 << 31) else key


async def acquire_advisory_lock(session: AsyncSession, *parts: object) -> bool:
    """Acquire a transaction-scoped advisory lock.

    Serializes writers for the same key until the surrounding transaction
    ends. Dialects without advisory locks rely on the single-writer model and
    return True.
    """
    bind = session.get_bind()
    if bind.dialect.name != "postgresql":
        return True

    await session.execute(
        text("SELECT pg_advisory_xact_lock(:key)"),
        {"key": lock_key(*parts)},
    )
    return True
