"""
Database module for reelpipe.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, and schema initialization.
"""
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from reelpipe.db.engine import (
    async_session,
    create_engine_for,
    create_session_factory,
    engine,
    shutdown,
)
from reelpipe.db.models import Asset, Base, GenerationJob, Pipeline, PipelineLog

logger = logging.getLogger(__name__)


async def init_database(bind: AsyncEngine | None = None):
    """Initialize database schema on first run."""
    bind = bind or engine
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database schema ready ({bind.url.render_as_string(hide_password=True)})")


__all__ = [
    "Base",
    "Pipeline",
    "PipelineLog",
    "Asset",
    "GenerationJob",
    "engine",
    "async_session",
    "create_engine_for",
    "create_session_factory",
    "shutdown",
    "init_database",
]
