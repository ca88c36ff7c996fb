"""Database connection provider used by the integrity checker.

The checker only needs four capabilities from the engine: a trivial query,
the native consistency check, a row count per table and an idempotent upsert.
``SQLiteConnectionProvider`` supplies them for a SQLite file.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Protocol

WRITE_TEST_KEY = "system.database_write_test"


class ConnectionProvider(Protocol):
    def ping(self) -> None: ...

    def integrity_check(self) -> str: ...

    def count_rows(self, table: str) -> int: ...

    def upsert_sentinel(self) -> None: ...


class SQLiteConnectionProvider:
    """Opens a short-lived connection per probe.

    The database is opened with ``mode=rw`` so a missing file is reported as a
    connection failure instead of being silently created empty.
    """

    def __init__(self, db_path: Path, write_table: str = "settings", timeout: float = 5.0) -> None:
        self.db_path = Path(db_path)
        self.write_table = write_table
        self.timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        uri = f"{self.db_path.resolve().as_uri()}?mode=rw"
        return sqlite3.connect(uri, uri=True, timeout=self.timeout)

    def ping(self) -> None:
        conn = self._connect()
        try:
            conn.execute("SELECT 1 AS test").fetchone()
        finally:
            conn.close()

    def integrity_check(self) -> str:
        conn = self._connect()
        try:
            row = conn.execute("PRAGMA integrity_check").fetchone()
        finally:
            conn.close()
        return str(row[0]) if row else ""

    def count_rows(self, table: str) -> int:
        conn = self._connect()
        try:
            row = conn.execute(f'SELECT COUNT(*) FROM "{table}"').fetchone()
        finally:
            conn.close()
        return int(row[0]) if row else 0

    def upsert_sentinel(self) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    f'INSERT OR REPLACE INTO "{self.write_table}" (key, value, type, category) '
                    "VALUES (?, datetime('now'), 'string', 'system')",
                    (WRITE_TEST_KEY,),
                )
        finally:
            conn.close()
