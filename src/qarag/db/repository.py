"""Repository pattern for qarag store operations.

Single interface for: projects, their serialized engine state, and the
registry of ingested documents. The engine state blob is whatever
``QAEngine.serialize`` produced; the repository never looks inside it.
"""

from __future__ import annotations

import sqlite3

from qarag.db.models import DocumentRecord, ProjectRecord


class Repository:
    """Data access layer for all qarag store entities.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open connection whose schema is initialised
        (see qarag.db.connection.Database)."""
        self._conn = conn

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def ensure_project(self, project_id: str) -> ProjectRecord:
        """Insert the project if missing and return its record."""
        self._conn.execute("INSERT OR IGNORE INTO projects (id) VALUES (?)", (project_id,))
        self._conn.commit()
        project = self.get_project(project_id)
        assert project is not None
        return project

    def get_project(self, project_id: str) -> ProjectRecord | None:
        row = self._conn.execute(
            "SELECT id, created_at, updated_at, state IS NOT NULL AS has_state "
            "FROM projects WHERE id = ?",
            (project_id,),
        ).fetchone()
        return _row_to_project(row) if row else None

    def list_projects(self) -> list[ProjectRecord]:
        rows = self._conn.execute(
            "SELECT id, created_at, updated_at, state IS NOT NULL AS has_state "
            "FROM projects ORDER BY id"
        ).fetchall()
        return [_row_to_project(r) for r in rows]

    def delete_project(self, project_id: str) -> bool:
        """Delete a project; its documents cascade. Returns False if it did not exist."""
        cur = self._conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        self._conn.commit()
        return cur.rowcount > 0

    def save_state(self, project_id: str, state: bytes) -> None:
        self.ensure_project(project_id)
        self._conn.execute(
            "UPDATE projects SET state = ?, updated_at = datetime('now') WHERE id = ?",
            (state, project_id),
        )
        self._conn.commit()

    def load_state(self, project_id: str) -> bytes | None:
        row = self._conn.execute(
            "SELECT state FROM projects WHERE id = ?", (project_id,)
        ).fetchone()
        if row is None or row["state"] is None:
            return None
        return bytes(row["state"])

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def upsert_document(self, doc: DocumentRecord) -> None:
        """Insert or replace a document record for its project."""
        self.ensure_project(doc.project_id)
        self._conn.execute(
            """
            INSERT INTO documents (project_id, document_id, path, content_hash, chunk_count)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (project_id, document_id) DO UPDATE SET
                path = excluded.path,
                content_hash = excluded.content_hash,
                chunk_count = excluded.chunk_count,
                ingested_at = datetime('now')
            """,
            (doc.project_id, doc.document_id, doc.path, doc.content_hash, doc.chunk_count),
        )
        self._conn.commit()

    def get_document(self, project_id: str, document_id: str) -> DocumentRecord | None:
        row = self._conn.execute(
            "SELECT project_id, document_id, path, content_hash, chunk_count, ingested_at "
            "FROM documents WHERE project_id = ? AND document_id = ?",
            (project_id, document_id),
        ).fetchone()
        return _row_to_document(row) if row else None

    def list_documents(self, project_id: str) -> list[DocumentRecord]:
        rows = self._conn.execute(
            "SELECT project_id, document_id, path, content_hash, chunk_count, ingested_at "
            "FROM documents WHERE project_id = ? ORDER BY ingested_at, document_id",
            (project_id,),
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def delete_document(self, project_id: str, document_id: str) -> bool:
        cur = self._conn.execute(
            "DELETE FROM documents WHERE project_id = ? AND document_id = ?",
            (project_id, document_id),
        )
        self._conn.commit()
        return cur.rowcount > 0


def _row_to_project(row: sqlite3.Row) -> ProjectRecord:
    return ProjectRecord(
        id=row["id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        has_state=bool(row["has_state"]),
    )


def _row_to_document(row: sqlite3.Row) -> DocumentRecord:
    return DocumentRecord(
        project_id=row["project_id"],
        document_id=row["document_id"],
        path=row["path"],
        content_hash=row["content_hash"],
        chunk_count=row["chunk_count"],
        ingested_at=row["ingested_at"],
    )
