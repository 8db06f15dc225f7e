"""qarag ingest: extract, chunk, embed and index files into a project.

Usage:
  qarag ingest checkout-app requirements.md login-spec.pdf
  qarag ingest checkout-app notes.txt --db ~/qa/.qarag.db

Documents are keyed by file name. Re-ingesting an unchanged file is a
no-op; a changed file replaces its previous chunks.
"""

from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import Annotated

import typer

from qarag.cli.errors import (
    err_empty_document,
    err_engine,
    err_file_not_found,
    err_unsupported_file,
)
from qarag.cli.store import (
    DEFAULT_DB,
    build_engine,
    console,
    load_cli_config,
    load_project,
    open_db,
    require_api_keys,
    save_project,
)
from qarag.db.models import DocumentRecord
from qarag.db.repository import Repository
from qarag.engine import QAEngine
from qarag.errors import EmptyDocumentError, QaragError
from qarag.ingest.extract import SUPPORTED_EXTENSIONS, UnsupportedFileType, extract_text


def ingest_cmd(
    project: Annotated[str, typer.Argument(help="Project id.")],
    files: Annotated[list[Path], typer.Argument(help="Files to ingest (.txt .md .pdf ...).")],
    db: Annotated[Path, typer.Option("--db", help="Path to .qarag.db (created if missing).")] = DEFAULT_DB,
) -> None:
    """Ingest one or more documents into a project."""
    config = load_cli_config(db)
    require_api_keys(config, generation=False)

    conn = open_db(db)
    repo = Repository(conn)
    engine = build_engine(config)
    failures = 0

    try:
        load_project(engine, repo, project)
        failures = asyncio.run(_ingest_all(engine, repo, project, files))
        save_project(engine, repo, project)
    finally:
        conn.close()

    if failures:
        raise typer.Exit(1)


async def _ingest_all(engine: QAEngine, repo: Repository, project: str, files: list[Path]) -> int:
    failures = 0
    for path in files:
        if not await _ingest_one(engine, repo, project, path):
            failures += 1
    return failures


async def _ingest_one(engine: QAEngine, repo: Repository, project: str, path: Path) -> bool:
    console.print(f"\n[bold]→ {path}[/]")
    document_id = path.name

    try:
        text = extract_text(path)
    except UnsupportedFileType:
        console.print(err_unsupported_file(str(path), path.suffix, list(SUPPORTED_EXTENSIONS)))
        return False
    except FileNotFoundError:
        console.print(err_file_not_found(str(path)))
        return False

    content_hash = compute_hash(text)
    existing = repo.get_document(project, document_id)
    if (
        existing
        and existing.content_hash == content_hash
        and document_id in engine.document_ids(project)
    ):
        console.print(f"  [dim]↷ Unchanged ({existing.chunk_count} chunks already indexed)[/]")
        return True

    try:
        result = await engine.ingest_document(project, document_id, text)
    except EmptyDocumentError:
        console.print(err_empty_document(str(path)))
        return False
    except QaragError as exc:
        console.print(err_engine(exc))
        return False

    repo.upsert_document(
        DocumentRecord(
            project_id=project,
            document_id=document_id,
            path=str(path),
            content_hash=content_hash,
            chunk_count=result.chunk_count,
        )
    )
    verb = "Re-indexed" if existing else "Indexed"
    console.print(f"  [green]✓[/] {verb}: {result.chunk_count} chunks")
    return True


def compute_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
