"""Database configuration, session management and store-call guarding."""

import asyncio
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from uplift.core.config import Settings, get_settings
from uplift.core.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)


def create_engine(settings: Settings) -> AsyncEngine:
    """Create async SQLAlchemy engine."""
    return create_async_engine(
        str(settings.database_url),
        echo=settings.app_debug,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        pool_timeout=settings.store_timeout_seconds,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create async session factory."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Initialized on startup
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_database(settings: Settings | None = None) -> None:
    """Initialize database engine and session factory."""
    global _engine, _session_factory
    if settings is None:
        settings = get_settings()
    _engine = create_engine(settings)
    _session_factory = create_session_factory(_engine)


def get_engine() -> AsyncEngine:
    """Get the database engine."""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that provides a database session.

    Commits when the request handler returns, rolls back on any exception.
    A failed commit surfaces as StoreUnavailableError.
    """
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise StoreUnavailableError(f"Commit failed: {type(e).__name__}") from e
        except Exception:
            await session.rollback()
            raise


DbSession = Annotated[AsyncSession, Depends(get_db_session)]


@asynccontextmanager
async def store_call(operation: str, timeout: float | None = None) -> AsyncIterator[None]:
    """Bound a store call in time and translate driver failures.

    Raw SQLAlchemy/driver exceptions and timeouts never leave this block;
    both become StoreUnavailableError.
    """
    if timeout is None:
        timeout = get_settings().store_timeout_seconds
    try:
        async with asyncio.timeout(timeout):
            yield
    except TimeoutError as e:
        logger.warning("Store call timed out", extra={"operation": operation, "timeout": timeout})
        raise StoreUnavailableError(f"{operation} timed out after {timeout}s") from e
    except SQLAlchemyError as e:
        logger.warning(
            "Store call failed",
            extra={"operation": operation, "error": type(e).__name__},
            exc_info=True,
        )
        raise StoreUnavailableError(f"{operation} failed: {type(e).__name__}") from e


async def close_database() -> None:
    """Close database connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
