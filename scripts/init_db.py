import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import create_engine
from core.logging import setup_logging
# Importing the package registers every table on Base.metadata
from models import Base

logger = logging.getLogger(__name__)


async def init_database():
    logger.info("Connecting to database...")
    engine = create_engine()

    try:
        async with engine.begin() as conn:
            logger.info("Creating tables...")
            await conn.run_sync(Base.metadata.create_all)
            logger.info(f"Created {len(Base.metadata.tables)} tables.")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        return 1
    finally:
        await engine.dispose()
    return 0


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(init_database()))
