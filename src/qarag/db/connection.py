"""SQLite store for project snapshots and the document registry.

One file per workspace (``.qarag.db`` next to ``qarag.yaml``). Opening a
connection brings the schema up to date, so callers never see a store at an
older version.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from qarag.db.migrations import run_migrations


class Database:
    """Opens connections to one store file.

    Args:
        db_path: Path to the SQLite file; it and its parent directories are
            created on first connect.
        migrate: Apply pending migrations on connect. Disabled only by tests
            that exercise the migration runner directly.
        busy_timeout: Seconds to wait on a lock held by another process.
    """

    def __init__(self, db_path: Path | str, *, migrate: bool = True, busy_timeout: float = 5.0) -> None:
        self.db_path = Path(db_path)
        self.migrate = migrate
        self.busy_timeout = busy_timeout
        self._conn: sqlite3.Connection | None = None

    def exists(self) -> bool:
        return self.db_path.is_file()

    def connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        if self.migrate:
            run_migrations(conn)
        return conn

    def __enter__(self) -> sqlite3.Connection:
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None
