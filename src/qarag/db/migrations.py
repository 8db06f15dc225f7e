"""Forward-only migrations for the qarag store.

Version 1 holds one row per project (its engine snapshot as a BLOB) and a
registry of ingested documents used to skip unchanged files on re-ingest.
"""

from __future__ import annotations

import sqlite3

_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS projects (
    id          TEXT PRIMARY KEY,
    state       BLOB,
    created_at  DATETIME NOT NULL DEFAULT (datetime('now')),
    updated_at  DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS documents (
    project_id    TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    document_id   TEXT NOT NULL,
    path          TEXT NOT NULL,
    content_hash  TEXT NOT NULL,
    chunk_count   INTEGER NOT NULL DEFAULT 0,
    ingested_at   DATETIME NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (project_id, document_id)
);
"""

# Append-only (version, sql). executescript() commits before it runs.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
]

CURRENT_VERSION = MIGRATIONS[-1][0]


def current_version(conn: sqlite3.Connection) -> int:
    """Highest applied migration, 0 for a store that has none."""
    conn.execute(_CREATE_SCHEMA_VERSION)
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row[0] is not None else 0


def run_migrations(conn: sqlite3.Connection) -> int:
    """Apply pending migrations in ascending order and return the new version.

    Idempotent. A store written by a newer qarag is left untouched.
    """
    current = current_version(conn)
    conn.commit()
    for version, sql in MIGRATIONS:
        if version <= current:
            continue
        conn.executescript(sql)
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
        conn.commit()
        current = version
    return current
