"""Database initialization script.

Run this to initialize the PayAgent database schema and seed the fee
configuration from the environment defaults.
"""

import asyncio
import sys

from payagent.config import config
from payagent.core.fees import default_fee_config
from payagent.database import db
from payagent.logging_utils import get_logger, setup_logging

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main():
    """Initialize the database."""
    logger.info("Initializing PayAgent database...")
    logger.info(f"Database path: {db.db_path}")

    await db.initialize()

    fee_config = await db.get_fee_config()
    if fee_config is None:
        await db.save_fee_config(default_fee_config())
        fee_config = await db.get_fee_config()

    if fee_config is None:
        logger.error("Failed to seed fee configuration.")
        sys.exit(1)

    logger.info(
        f"Fee config: {fee_config.flat_fee_amount} {fee_config.incentive_token} "
        f"({fee_config.platform_share} platform / {fee_config.creator_reward} creator), "
        f"treasury {fee_config.treasury_wallet}"
    )
    logger.info("Database initialization complete!")


if __name__ == "__main__":
    asyncio.run(main())
