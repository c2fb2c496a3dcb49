# Core Module: Central SQLite Connection Helper
#
# Every PassVault SQLite database uses `connect()` from this module
# instead of raw `sqlite3.connect()`. This ensures:
#
#   - WAL journal mode (concurrent readers + one writer)
#   - busy_timeout to avoid SQLITE_BUSY when a background backup or
#     sync job writes while a request thread polls status
#   - foreign_keys enforcement on every connection

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Union


def connect(
    db_path: Union[str, Path],
    *,
    row_factory: bool = False,
    check_same_thread: bool = True,
) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode and safe PRAGMAs.

    Args:
        db_path: Path to the database file.
        row_factory: If True, set conn.row_factory = sqlite3.Row.
        check_same_thread: Passed to sqlite3.connect().

    Returns:
        sqlite3.Connection with WAL mode, busy_timeout, and foreign_keys.
    """
    conn = sqlite3.connect(str(db_path), check_same_thread=check_same_thread)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn


def utcnow_iso() -> str:
    """Current UTC time as an ISO 8601 string (the format every table stores)."""
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value):
    """Parse a stored ISO timestamp. Returns None for empty values."""
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
