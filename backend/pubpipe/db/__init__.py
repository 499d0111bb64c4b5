"""
Database module for pubpipe.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, and schema initialization.
"""
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from pubpipe.db.engine import (
    async_session,
    create_engine,
    create_session_factory,
    engine,
    shutdown,
)
from pubpipe.db.models import Base, StepRecord, WorkUnit, utcnow

logger = logging.getLogger(__name__)


async def init_database(bind: AsyncEngine | None = None):
    """Initialize database schema on first run."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug("Database schema ready")


__all__ = [
    "Base",
    "StepRecord",
    "WorkUnit",
    "utcnow",
    "engine",
    "async_session",
    "create_engine",
    "create_session_factory",
    "shutdown",
    "init_database",
]
