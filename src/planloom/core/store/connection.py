"""
SQLite connection helpers for the plan store.
"""

import logging
import sqlite3
from pathlib import Path
from typing import Any

from planloom.core.store.schema import create_schema, needs_migration

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


def dict_factory(cursor: sqlite3.Cursor, row: tuple[Any, ...]) -> dict[str, Any]:
    """
    Row factory that returns dictionaries instead of tuples.

    Args:
        cursor: SQLite cursor
        row: Row tuple

    Returns:
        Dictionary mapping column names to values
    """
    fields = [column[0] for column in cursor.description]
    return dict(zip(fields, row))


def configure_connection(conn: sqlite3.Connection, *, wal: bool = True) -> None:
    """
    Configure a connection for the plan store.

    Sets up:
    - Dictionary row factory
    - Foreign key enforcement
    - WAL journal mode (file databases only)
    """
    conn.row_factory = dict_factory
    conn.execute("PRAGMA foreign_keys = ON")
    if wal:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")


def open_connection(db_path: Path | str) -> sqlite3.Connection:
    """
    Open (and if needed initialize) a plan store database.

    The connection runs in autocommit mode; SqlitePlanStore issues explicit
    BEGIN/COMMIT for batches. It may be shared across threads, callers
    serialize access.

    Args:
        db_path: Database file path, or ":memory:"

    Returns:
        Configured connection with the current schema
    """
    in_memory = str(db_path) == MEMORY_PATH
    if not in_memory:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(
        str(db_path),
        isolation_level=None,
        check_same_thread=False,
    )
    configure_connection(conn, wal=not in_memory)

    if needs_migration(conn):
        logger.info("Initializing plan store schema at %s", db_path)
        create_schema(conn)

    return conn
