# merchant/core/logging_config.py
"""
Centralized logging configuration for the application.

Keeps ledger, checkout, ingestion and delivery logs visible while quieting
the HTTP client, database driver and scheduler libraries.
"""

import logging

from merchant.core.config import get_settings


def configure_logging():
    """
    Configure logging for the application.

    - App code: LOG_LEVEL (INFO by default)
    - HTTP clients (httpx, httpcore): WARNING only
    - Database (sqlalchemy, asyncpg, aiosqlite): WARNING only
    - APScheduler: WARNING only
    """
    log_level = get_settings().LOG_LEVEL.upper()
    level = getattr(logging, log_level, logging.INFO)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler()]
    )

    for noisy in ("httpx", "httpcore", "sqlalchemy", "sqlalchemy.engine",
                  "asyncpg", "aiosqlite", "apscheduler"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger("merchant").setLevel(level)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at level: {log_level}")
