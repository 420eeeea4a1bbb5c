import asyncio
import logging
import os
import sys

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import create_engine, init_models
from core.logging import setup_logging

logger = logging.getLogger(__name__)


async def init_database():
    logger.info("Connecting to database...")
    engine = create_engine(settings.DATABASE_URL)
    try:
        logger.info("Creating tables...")
        await init_models(engine)
        logger.info("Tables created successfully.")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(init_database())
