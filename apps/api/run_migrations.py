#!/usr/bin/env python3
"""
Container entrypoint step: wait for Postgres, then ``alembic upgrade head``.

Exits non-zero if the database never comes up or a migration fails, so the
API never starts against a half-migrated schema.
"""
import logging
import os
import sys
import time

from alembic import command
from alembic.config import Config
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from core.config import settings
from core.database import engine
from core.logging import setup_logging

logger = logging.getLogger("run_migrations")

ALEMBIC_INI = os.path.join(os.path.dirname(os.path.abspath(__file__)), "alembic.ini")


def wait_for_database(attempts: int) -> bool:
    for attempt in range(1, attempts + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except OperationalError:
            logger.info(f"Database not ready ({attempt}/{attempts})")
            time.sleep(1)
    return False


def main() -> int:
    setup_logging()
    if not wait_for_database(settings.DB_STARTUP_RETRIES):
        logger.error("Database did not become ready; aborting")
        return 1

    try:
        command.upgrade(Config(ALEMBIC_INI), "head")
    except Exception:
        logger.exception("Alembic upgrade failed")
        return 1

    logger.info("Schema is at head")
    return 0


if __name__ == "__main__":
    sys.exit(main())
