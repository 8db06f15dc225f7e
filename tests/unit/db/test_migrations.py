"""Tests for the forward-only migration runner."""

from __future__ import annotations

from qarag.db.connection import Database
from qarag.db.migrations import CURRENT_VERSION, MIGRATIONS, current_version, run_migrations


def _fresh_conn(tmp_path):
    return Database(tmp_path / "test.db", migrate=False).connect()


def _columns(conn, table: str) -> set[str]:
    return {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}


def test_fresh_store_is_version_zero(tmp_path):
    conn = _fresh_conn(tmp_path)
    assert current_version(conn) == 0
    conn.close()


def test_run_migrations_returns_new_version(tmp_path):
    conn = _fresh_conn(tmp_path)
    assert run_migrations(conn) == CURRENT_VERSION == MIGRATIONS[-1][0]
    assert current_version(conn) == CURRENT_VERSION
    conn.close()


def test_run_migrations_idempotent(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    run_migrations(conn)
    count = conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
    assert count == len(MIGRATIONS)
    conn.close()


def test_newer_store_is_left_alone(tmp_path):
    conn = _fresh_conn(tmp_path)
    current_version(conn)
    conn.execute("INSERT INTO schema_version (version) VALUES (?)", (CURRENT_VERSION + 5,))
    conn.commit()
    assert run_migrations(conn) == CURRENT_VERSION + 5
    assert "projects" not in {r["name"] for r in conn.execute("SELECT name FROM sqlite_master")}
    conn.close()


def test_migrations_are_ascending():
    versions = [v for v, _ in MIGRATIONS]
    assert versions == sorted(versions)
    assert len(versions) == len(set(versions))


def test_projects_columns(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    assert _columns(conn, "projects") == {"id", "state", "created_at", "updated_at"}
    conn.close()


def test_documents_columns(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    assert _columns(conn, "documents") == {
        "project_id",
        "document_id",
        "path",
        "content_hash",
        "chunk_count",
        "ingested_at",
    }
    conn.close()


def test_documents_cascade_with_project(tmp_path):
    conn = Database(tmp_path / "test.db").connect()
    conn.execute("INSERT INTO projects (id) VALUES ('p1')")
    conn.execute(
        "INSERT INTO documents (project_id, document_id, path, content_hash) "
        "VALUES ('p1', 'a.md', '/tmp/a.md', 'h')"
    )
    conn.execute("DELETE FROM projects WHERE id = 'p1'")
    assert conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0] == 0
    conn.close()
