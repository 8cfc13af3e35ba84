"""Async SQLAlchemy setup for the session and replay tables.

Each app built by the application factory gets its own engine, so several
apps (or tests) can point at different databases. Engines connect lazily:
importing ``backchannel_logout.main`` builds the default app and its engine
but opens no connection until the first query.
"""

import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from backchannel_logout.core.config import Settings, settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def engine_options(database_url: str, app_settings: Settings = settings) -> dict[str, Any]:
    """Pool options from DB_POOL_* settings. SQLite gets none."""
    options: dict[str, Any] = {"echo": app_settings.debug and app_settings.log_level == "DEBUG"}
    if database_url.startswith("sqlite"):
        return options
    return {
        **options,
        "pool_size": app_settings.db_pool_size,
        "max_overflow": app_settings.db_max_overflow,
        "pool_timeout": app_settings.db_pool_timeout,
        "pool_recycle": app_settings.db_pool_recycle,
        "pool_pre_ping": True,
    }


def create_engine(database_url: str, app_settings: Settings = settings) -> AsyncEngine:
    return create_async_engine(database_url, **engine_options(database_url, app_settings))


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create the oidc_sessions and logout_token_jtis tables if missing."""
    # Registers the mapped classes on Base.metadata
    import backchannel_logout.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db_connection(session_factory: async_sessionmaker[AsyncSession]) -> bool:
    """True if ``SELECT 1`` succeeds."""
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True
    except (OSError, ConnectionError) as e:
        logger.debug(f"Database connection check failed: {e}")
        return False
    except Exception as e:
        logger.warning(f"Unexpected error checking database connection: {e}")
        return False
