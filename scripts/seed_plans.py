#!/usr/bin/env python3
"""
Plan catalog initialization script.

Creates the billing schema and inserts the reference plans (Free, Pro,
Enterprise) that are not present yet.

Usage:
    python scripts/seed_plans.py [--db-path PATH]

Options:
    --db-path PATH    Path to SQLite database file (default: DATABASE_PATH or ./data/sahab.db)

This script is idempotent - existing plan rows are left untouched.
"""

import argparse
import asyncio
import logging

from sahab.config import get_settings
from sahab.models.plan import DEFAULT_PLANS
from sahab.storage.database import SCHEMA_TABLES, BillingDatabase

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def seed_database(db_path: str) -> bool:
    """
    Initialize the billing schema and seed the plan catalog.

    Args:
        db_path: Path to SQLite database file

    Returns:
        bool: True if initialization succeeded
    """
    db = BillingDatabase(db_path=db_path)
    try:
        logger.info(f"Initializing billing database at {db_path}")
        await db.initialize()

        tables = {
            row[0]
            for row in db._get_connection().execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            )
        }
        missing = set(SCHEMA_TABLES) - tables
        if missing:
            logger.error(f"Missing tables: {sorted(missing)}")
            return False

        inserted = await db.seed_plans(DEFAULT_PLANS)
        logger.info(f"Inserted {inserted} new plan(s)")

        for plan in await db.list_plans():
            logger.info(
                f"  {plan.id:<12} {plan.name:<12} {plan.price_major:>8.2f} {plan.currency}  "
                f"storage={plan.storage_limit} MB  upload={plan.max_upload_size} MB  "
                f"transformations={plan.transformations_limit}"
            )

        logger.info("Plan catalog ready")
        return True

    except Exception as e:
        logger.error(f"Plan seeding failed: {e}", exc_info=True)
        return False

    finally:
        db.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Initialize the Sahab billing database")
    parser.add_argument(
        "--db-path",
        default=None,
        help="Path to SQLite database file (default: DATABASE_PATH setting)",
    )
    args = parser.parse_args()

    db_path = args.db_path or get_settings().database.path
    return 0 if asyncio.run(seed_database(db_path)) else 1


if __name__ == "__main__":
    raise SystemExit(main())
