"""
Database initialization and connection management for the custody engine.

This module handles:
- Creating the data directory if it doesn't exist
- Setting up SQLite with WAL mode, foreign keys and a busy timeout
- Providing database connection utilities
"""

import sqlite3
import threading
from pathlib import Path
from typing import Optional, Set

from custody.core.config import Config
from custody.utils.logging_config import get_logger

logger = get_logger(__name__)

MEMORY_DB = ":memory:"

_SCHEMA_LOCK = threading.Lock()
_SCHEMA_INITIALIZED: Set[str] = set()


def ensure_data_directory(db_path: Optional[str] = None) -> None:
    """Create the data directory if it doesn't exist."""
    db_path = db_path or Config.DB_PATH
    if db_path == MEMORY_DB:
        return
    data_dir = Path(db_path).parent

    if not data_dir.exists():
        data_dir.mkdir(parents=True, exist_ok=True)
        logger.info("data_directory_created", path=str(data_dir))


def get_db_connection(db_path: Optional[str] = None) -> sqlite3.Connection:
    """
    Get a database connection with proper configuration.

    Args:
        db_path: Path to the SQLite database file. If None, uses Config.DB_PATH.

    Returns:
        Configured SQLite connection with WAL mode and foreign keys enabled.
    """
    if db_path is None:
        db_path = Config.DB_PATH

    ensure_data_directory(db_path)

    conn = sqlite3.connect(
        db_path,
        timeout=Config.DB_BUSY_TIMEOUT_SECONDS,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row

    conn.execute("PRAGMA foreign_keys = ON")  # Enforce referential integrity
    if db_path != MEMORY_DB:
        conn.execute("PRAGMA journal_mode = WAL")  # Write-Ahead Logging for resilience
    conn.execute("PRAGMA synchronous = NORMAL")  # Balance safety vs performance

    # Schema is ensured once per database file; in-memory databases are always fresh
    key = str(Path(db_path).resolve()) if db_path != MEMORY_DB else None
    if key is None:
        from custody.core.schema import create_schema

        create_schema(conn)
    elif key not in _SCHEMA_INITIALIZED:
        with _SCHEMA_LOCK:
            if key not in _SCHEMA_INITIALIZED:
                # Local import avoids circular dependency during module load
                from custody.core.schema import create_schema

                create_schema(conn)
                _SCHEMA_INITIALIZED.add(key)

    return conn


def initialize_database(db_path: Optional[str] = None) -> sqlite3.Connection:
    """
    Initialize the database with schema and seed data.

    Args:
        db_path: Path to the SQLite database file. If None, uses Config.DB_PATH.

    Returns:
        Database connection with initialized schema.
    """
    conn = get_db_connection(db_path)

    # Import here to avoid circular imports
    from custody.core.schema import create_schema
    from custody.core.seed_data import insert_seed_data

    # Files recreated under an already-seen path still need their tables
    create_schema(conn)
    insert_seed_data(conn)

    return conn


def close_connection(conn: sqlite3.Connection) -> None:
    """
    Close the database connection properly.

    Args:
        conn: Database connection to close.
    """
    if conn:
        conn.close()
