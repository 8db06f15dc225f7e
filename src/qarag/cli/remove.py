"""qarag remove: document and project lifecycle management.

Usage:
  qarag remove checkout-app --document login-spec.pdf
  qarag remove checkout-app --yes          # whole project: index, memory, registry
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer

from qarag.cli.errors import err_no_db, err_project_not_found
from qarag.cli.store import (
    DEFAULT_DB,
    build_engine,
    console,
    load_cli_config,
    open_db,
    save_project,
)
from qarag.db.repository import Repository


def remove_cmd(
    project: Annotated[str, typer.Argument(help="Project id.")],
    document: Annotated[
        str | None,
        typer.Option("--document", "-d", help="Remove only this document (file name)."),
    ] = None,
    db: Annotated[Path, typer.Option("--db", help="Path to .qarag.db.")] = DEFAULT_DB,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt.")] = False,
) -> None:
    """Remove a document from a project, or the whole project."""
    if not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)

    conn = open_db(db)
    repo = Repository(conn)
    try:
        if repo.get_project(project) is None:
            console.print(err_project_not_found(project))
            raise typer.Exit(0)

        if document is None:
            docs = repo.list_documents(project)
            console.print(f"\nRemove project: [bold]{project}[/]")
            console.print(f"  Documents: {len(docs)}  |  conversation history: deleted")
            if not yes and not typer.confirm("Confirm removal?", default=False):
                console.print("[dim]Cancelled.[/]")
                raise typer.Exit(0)
            repo.delete_project(project)
            console.print(f"\n[green]✓[/] Removed project: {project}")
            return

        state = repo.load_state(project)
        config = load_cli_config(db)
        engine = build_engine(config)
        if state is None:
            engine.open_project(project)
        else:
            engine.deserialize(state)

        if document not in engine.document_ids(project) and repo.get_document(project, document) is None:
            console.print(f"[yellow]Document not found in {project}:[/] {document}")
            raise typer.Exit(0)

        if not yes and not typer.confirm(f"Remove {document} from {project}?", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)

        removed = asyncio.run(engine.remove_document(project, document))
        repo.delete_document(project, document)
        save_project(engine, repo, project)
        console.print(f"\n[green]✓[/] Removed: {document} ({removed} chunks)")
    finally:
        conn.close()
