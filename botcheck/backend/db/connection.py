"""Database connection manager with FK enforcement and WAL mode."""

import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

SCHEMA_SQL_PATH = Path(__file__).parent / "schema.sql"

DEFAULT_DB_PATH = "./data/botcheck.db"


def _resolve_db_path(db_path: str = None) -> str:
    if db_path is None:
        db_path = os.environ.get('DB_PATH', DEFAULT_DB_PATH)
    return db_path


@contextmanager
def get_connection(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """
    Context manager that yields an SQLite connection with FK enforcement and WAL mode.

    Args:
        db_path: Path to the SQLite database file. If None, reads from DB_PATH
                 environment variable, falling back to './data/botcheck.db'.

    Yields:
        sqlite3.Connection: Database connection with foreign keys enabled,
                           WAL mode active, and row_factory set to sqlite3.Row.

    Example:
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM analysis_requests WHERE status = 'queued'")
            rows = cursor.fetchall()
    """
    db_path = _resolve_db_path(db_path)

    conn = None
    try:
        # Connect with cross-thread compatibility
        conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30.0)

        # Enable dict-like row access
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")

        yield conn

    finally:
        if conn is not None:
            conn.close()


def init_schema(db_path: str = None) -> None:
    """
    Create the worker tables if they do not exist.

    Executes schema.sql against the database. Creates the parent directory of
    the database file when needed. Safe to call on every startup.

    Args:
        db_path: Path to the SQLite database file (defaults to DB_PATH env var).
    """
    db_path = _resolve_db_path(db_path)
    parent = Path(db_path).parent
    if str(parent) not in ("", "."):
        parent.mkdir(parents=True, exist_ok=True)

    sql = SCHEMA_SQL_PATH.read_text()
    # executescript resets per-connection PRAGMAs, so they are applied by get_connection
    statements = "\n".join(
        line for line in sql.splitlines()
        if not line.strip().upper().startswith("PRAGMA")
    )
    with get_connection(db_path) as conn:
        conn.executescript(statements)
        conn.commit()


def get_config(key: str, db_path: str = None) -> str:
    """
    Retrieve a configuration value from the system_config table.

    Args:
        key: The configuration key to look up.
        db_path: Path to the SQLite database file. If None, reads from DB_PATH
                 environment variable, falling back to './data/botcheck.db'.

    Returns:
        str: The configuration value for the given key.

    Raises:
        KeyError: If the configuration key does not exist in the database.

    Example:
        threshold = get_config('scoring_confidence_threshold')
    """
    with get_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT value FROM system_config WHERE key = ?", (key,))
        row = cursor.fetchone()

        if row is None:
            raise KeyError(f"Config key not found: {key}")

        return row['value']
