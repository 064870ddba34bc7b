"""Engine and unit-of-work sessions for the usage store.

Raw events, buckets and the aggregation ledger share one database. On
SQLite every connection shares a single in-process connection, so an
in-memory database survives between sessions and a write transaction
blocks other writers until it ends.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from token_usage.config import Settings, get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base of the usage tables."""


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def engine_options(settings: Settings) -> dict[str, Any]:
    """Keyword arguments for ``create_async_engine`` on the configured backend."""
    if make_url(settings.database_url).get_backend_name() == "sqlite":
        return {
            "echo": settings.debug,
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        }
    return {
        "echo": settings.debug,
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_pool_max_overflow,
        "pool_pre_ping": True,
    }


def get_engine() -> AsyncEngine:
    """Return the shared engine, creating it on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **engine_options(settings))
        logger.info(
            "Created usage store engine: %s",
            make_url(settings.database_url).render_as_string(hide_password=True),
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the shared session factory bound to ``get_engine()``."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Open a session as one unit of work.

    Everything executed through the yielded session is committed together
    when the block exits normally and rolled back when it raises.

    Yields:
        AsyncSession instance.
    """
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        await session.commit()


async def init_database(max_retries: int = 30, retry_delay: float = 2.0) -> None:
    """Create any missing usage tables, waiting for the database to accept connections.

    Args:
        max_retries: Connection attempts before giving up.
        retry_delay: Seconds between attempts.

    Raises:
        RuntimeError: When every attempt failed.
    """
    # Registers the tables on Base.metadata
    from token_usage.db import models  # noqa: F401

    engine = get_engine()
    for attempt in range(1, max_retries + 1):
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except Exception as e:
            if attempt == max_retries:
                logger.error("Usage store unreachable after %d attempts: %s", attempt, e)
                raise RuntimeError(
                    f"Failed to connect to database after {max_retries} attempts"
                ) from e
            logger.warning(
                "Usage store not ready (attempt %d/%d): %s; retrying in %.1fs",
                attempt,
                max_retries,
                e,
                retry_delay,
            )
            await asyncio.sleep(retry_delay)
        else:
            logger.info("Usage tables ready: %s", ", ".join(sorted(Base.metadata.tables)))
            return


async def close_database() -> None:
    """Dispose of the shared engine; the next ``get_engine()`` starts afresh."""
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("Usage store connections closed")
