"""SQLite access for the statement ledger.

Every helper opens its own short-lived connection. Code that needs several
statements in one transaction (materialization plus the status update) takes
a connection from ``get_connection()`` and commits it itself.
"""

from __future__ import annotations

import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Any

from paths import LEDGER_DB_PATH

# Module-level so tests and the CLI can point at another ledger file.
DB_PATH: Path = LEDGER_DB_PATH

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"

# (table, column, DDL) added to ledgers created before the column existed.
_ADDITIVE_COLUMNS = (
    ("transactions", "currency", "TEXT NOT NULL DEFAULT 'ILS'"),
    ("documents", "error_message", "TEXT"),
)


def get_connection() -> sqlite3.Connection:
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(DB_PATH, timeout=30)
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA foreign_keys = ON")
    connection.execute("PRAGMA journal_mode = WAL")
    return connection


def _columns(connection: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in connection.execute(f"PRAGMA table_info({table})")}


def _apply_additive_migrations(connection: sqlite3.Connection) -> None:
    for table, column, ddl in _ADDITIVE_COLUMNS:
        if column not in _columns(connection, table):
            connection.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")


def init_db() -> None:
    """Create the schema on a fresh ledger, or migrate an existing one."""
    with closing(get_connection()) as connection:
        fresh = not connection.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name='documents'"
        ).fetchone()
        if fresh:
            connection.executescript(SCHEMA_PATH.read_text(encoding="utf-8"))
        else:
            _apply_additive_migrations(connection)
        connection.commit()


def fetchone(query: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
    with closing(get_connection()) as connection:
        row = connection.execute(query, params).fetchone()
    return dict(row) if row is not None else None


def fetchall(query: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
    with closing(get_connection()) as connection:
        return [dict(row) for row in connection.execute(query, params)]


def _write(query: str, params: tuple[Any, ...]) -> tuple[int, int]:
    with closing(get_connection()) as connection:
        cursor = connection.execute(query, params)
        connection.commit()
        return cursor.rowcount, cursor.lastrowid or 0


def execute(query: str, params: tuple[Any, ...] = ()) -> None:
    _write(query, params)


def execute_rowcount(query: str, params: tuple[Any, ...] = ()) -> int:
    """Run a write and return how many rows it touched (0 means a lost race or no match)."""
    return _write(query, params)[0]


def execute_returning_id(query: str, params: tuple[Any, ...] = ()) -> int:
    return _write(query, params)[1]
