"""
Database connection management.

Provides the SQLite connection shared by the subscription, usage and
event stores.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "carbot_metering.db"

# Seconds a writer waits for the database lock before failing
BUSY_TIMEOUT_SECONDS = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection that waits on locks instead of failing fast
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
