"""
Database session management with SQLAlchemy async
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker, AsyncEngine
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def create_engine(database_url: str = None) -> AsyncEngine:
    """Create the async engine used by the SQL reference store and init_db."""
    return create_async_engine(
        database_url or settings.DATABASE_URL,
        echo=False,
        poolclass=NullPool,  # Short-lived CLI processes, no pooling
        future=True
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    """Create a session factory bound to the engine"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )
