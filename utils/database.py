"""Database utilities for the ClinVar sync tools.

Provides reusable functions for:
- Connection setup and pragmas
- Batch insert operations
- Small catalog queries (table existence, counts, staging leftovers)
"""

import sqlite3
from pathlib import Path
from typing import List, Iterable


def init_pragmas(conn: sqlite3.Connection) -> None:
    """Initialize SQLite performance and reliability pragmas.

    - WAL mode so readers keep seeing the committed canonical tables while
      a load is writing its staging table
    - NORMAL synchronous mode for speed without data loss
    - Memory temp store, larger page cache
    - busy_timeout so a reader never fails outright during a promotion

    Args:
        conn: SQLite connection to configure
    """
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA temp_store=MEMORY")
    conn.execute("PRAGMA cache_size=-64000")
    conn.execute("PRAGMA busy_timeout=30000")


def connect(db_path: Path) -> sqlite3.Connection:
    """Open a pipeline connection.

    ``isolation_level=None`` disables the sqlite3 module's implicit
    transactions; the loader issues BEGIN/COMMIT/ROLLBACK itself so that
    staging and promotion have exactly the transaction boundaries it asks for.
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    init_pragmas(conn)
    return conn


def quote_ident(name: str) -> str:
    """Quote an SQL identifier (table or column name)."""
    return '"' + name.replace('"', '""') + '"'


def batch_insert(conn: sqlite3.Connection, query: str, rows: List[tuple],
                 batch_size: int = 1000) -> int:
    """Execute batch insert operations, one transaction per batch.

    Args:
        conn: SQLite connection (autocommit mode)
        query: SQL INSERT query with ? placeholders
        rows: List of tuples to insert
        batch_size: Number of rows per batch (default: 1000)

    Returns:
        Number of rows actually written (ignored conflicts excluded)
    """
    written = 0
    for i in range(0, len(rows), batch_size):
        batch = rows[i:i + batch_size]
        before = conn.total_changes
        conn.execute("BEGIN")
        try:
            conn.executemany(query, batch)
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
        written += conn.total_changes - before
    return written


def get_table_count(conn: sqlite3.Connection, table: str) -> int:
    """Get row count for a table."""
    result = conn.execute(f"SELECT COUNT(*) FROM {quote_ident(table)}").fetchone()
    return result[0] if result else 0


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    """Check if a table exists in the database."""
    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (table,)
    )
    return cursor.fetchone() is not None


def list_tables_like(conn: sqlite3.Connection, prefix: str) -> Iterable[str]:
    """Return table names starting with *prefix* (literal, not a pattern)."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND substr(name, 1, ?) = ?",
        (len(prefix), prefix),
    ).fetchall()
    return [r[0] for r in rows]
