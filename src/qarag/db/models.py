"""Row models for the qarag store."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ProjectRecord:
    id: str
    created_at: str | None = None
    updated_at: str | None = None
    has_state: bool = False


@dataclass
class DocumentRecord:
    project_id: str
    document_id: str
    path: str
    content_hash: str
    chunk_count: int = 0
    ingested_at: str | None = None
