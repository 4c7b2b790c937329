"""Create the persistence tables.

The DDL sticks to column types both SQLite and PostgreSQL accept, so the same
statements initialize the default local file and a hosted database.

Usage:
    python -m matchstick.init_db            # uses DATABASE_URL / DB_* / sqlite default
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


_logger = logging.getLogger("matchstick.db")

DDL_STATEMENTS = [
    """CREATE TABLE IF NOT EXISTS saves (
        id VARCHAR(64) PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        game_state TEXT NOT NULL,
        timestamp BIGINT NOT NULL,
        version VARCHAR(32),
        checksum VARCHAR(64) NOT NULL,
        is_auto_save INTEGER NOT NULL DEFAULT 0,
        seq BIGINT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_saves_seq ON saves (seq)",
    """CREATE TABLE IF NOT EXISTS settings (
        id VARCHAR(255) PRIMARY KEY,
        setting_key VARCHAR(255) NOT NULL,
        value TEXT,
        timestamp BIGINT NOT NULL
    )
    """,
    """CREATE TABLE IF NOT EXISTS achievements (
        id VARCHAR(100) PRIMARY KEY,
        achievement_id VARCHAR(100) NOT NULL,
        unlocked_at BIGINT NOT NULL,
        progress TEXT
    )
    """,
    """CREATE TABLE IF NOT EXISTS analytics (
        id VARCHAR(64) PRIMARY KEY,
        event VARCHAR(100) NOT NULL,
        data TEXT,
        timestamp BIGINT NOT NULL,
        session_id VARCHAR(64)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_analytics_timestamp ON analytics (timestamp)",
]

TABLES = ("saves", "settings", "achievements", "analytics")


def init_tables(engine: Engine) -> bool:
    """Create every table and index that does not exist yet."""
    try:
        with engine.begin() as conn:
            for sql in DDL_STATEMENTS:
                conn.execute(text(sql))
        _logger.info("Tables initialized successfully")
        return True
    except SQLAlchemyError as e:
        _logger.error(f"Error initializing tables: {e}")
        return False


def main() -> int:
    from matchstick.persistence import create_db_engine, get_database_url

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    engine = create_db_engine(get_database_url())
    try:
        return 0 if init_tables(engine) else 1
    finally:
        engine.dispose()


if __name__ == "__main__":
    raise SystemExit(main())
