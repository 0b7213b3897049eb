#!/usr/bin/env python3
"""Setup script for the court booking API."""

import asyncio
import logging
import sys
from pathlib import Path

# Add the server directory to the Python path
server_dir = Path(__file__).parent.parent / "server"
sys.path.insert(0, str(server_dir))

from alembic import command
from alembic.config import Config
from sqlalchemy import func, select

from courtslot.core.database import async_session_factory, close_db
from courtslot.models import Resource

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SAMPLE_COURTS = [
    ("Court 1", "badminton"),
    ("Court 2", "badminton"),
    ("Court 3", "badminton"),
    ("Center Court", "tennis"),
    ("Futsal Pitch", "futsal"),
]


def migrate_database() -> None:
    """Bring the schema up to the latest revision."""
    alembic_cfg = Config(str(server_dir / "db" / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(server_dir / "db" / "alembic"))

    logger.info("Running database migrations...")
    command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations completed")


async def create_sample_data() -> None:
    """Create a handful of courts to book."""
    logger.info("Creating sample data...")

    async with async_session_factory() as db:
        try:
            existing = await db.execute(select(func.count()).select_from(Resource))
            if existing.scalar_one() > 0:
                logger.info("Sample data already exists, skipping...")
                return

            for name, category in SAMPLE_COURTS:
                db.add(Resource(name=name, category=category))

            await db.commit()
            logger.info("Sample data created", extra={"courts": len(SAMPLE_COURTS)})

        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to create sample data: {e}")
            raise
    await close_db()


def main() -> None:
    """Main setup function."""
    logger.info("Starting court booking API setup...")

    # env.py drives its own event loop, so migrate before seeding
    migrate_database()
    asyncio.run(create_sample_data())

    logger.info("Setup completed successfully!")
    logger.info("You can now start the API server with: cd server && uvicorn courtslot.main:app --reload")


if __name__ == "__main__":
    main()
