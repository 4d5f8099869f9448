"""
Database connection management.

Provides the SQLite connection backing the durable snapshot store.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = ".arr-report.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection.

    The parent directory is created on first use. A busy timeout lets a second
    process wait for another instance's write instead of failing.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=30)
    return conn
