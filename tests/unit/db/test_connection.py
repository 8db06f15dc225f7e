"""Tests for the store connection layer."""

from __future__ import annotations

from pathlib import Path

import pytest

from qarag.db.connection import Database
from qarag.db.migrations import CURRENT_VERSION, current_version


def _tables(conn) -> set[str]:
    return {r["name"] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}


def test_connect_creates_file_and_parents(tmp_path):
    db = Database(tmp_path / "nested" / "dir" / ".qarag.db")
    assert not db.exists()
    conn = db.connect()
    conn.close()
    assert db.exists()


def test_connect_brings_schema_up_to_date(tmp_path):
    conn = Database(tmp_path / ".qarag.db").connect()
    assert {"projects", "documents", "schema_version"} <= _tables(conn)
    assert current_version(conn) == CURRENT_VERSION
    conn.close()


def test_reconnect_does_not_reapply(tmp_path):
    db = Database(tmp_path / ".qarag.db")
    db.connect().close()
    conn = db.connect()
    assert conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0] == CURRENT_VERSION
    conn.close()


def test_migrate_false_leaves_file_empty(tmp_path):
    conn = Database(tmp_path / ".qarag.db", migrate=False).connect()
    assert _tables(conn) == set()
    conn.close()


def test_pragmas(tmp_path):
    conn = Database(tmp_path / ".qarag.db").connect()
    assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
    assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
    conn.close()


def test_rows_are_addressable_by_name(tmp_path):
    conn = Database(tmp_path / ".qarag.db").connect()
    conn.execute("INSERT INTO projects (id) VALUES ('p1')")
    row = conn.execute("SELECT id FROM projects").fetchone()
    conn.close()
    assert row["id"] == "p1"


def test_context_manager_closes_connection(tmp_path):
    db = Database(str(tmp_path / ".qarag.db"))
    assert isinstance(db.db_path, Path)
    with db as conn:
        assert conn.execute("SELECT 1").fetchone()[0] == 1
    with pytest.raises(Exception):
        conn.execute("SELECT 1")
