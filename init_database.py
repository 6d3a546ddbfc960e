import asyncio
import logging
from linkearn.database import init_db, close_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

async def main():
    logger.info("Initializing database...")
    try:
        await init_db()
        logger.info("Database initialized successfully!")
        logger.info("All tables created, default settings row in place")
    finally:
        await close_db()

if __name__ == "__main__":
    asyncio.run(main())
