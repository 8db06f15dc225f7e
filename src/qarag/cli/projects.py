"""qarag projects: overview of every project in the store."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.panel import Panel
from rich.table import Table

from qarag.cli.errors import err_no_db
from qarag.cli.store import DEFAULT_DB, console, open_db
from qarag.db.repository import Repository


def projects_cmd(
    db: Annotated[Path, typer.Option("--db", help="Path to .qarag.db.")] = DEFAULT_DB,
) -> None:
    """List projects with their documents."""
    if not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)

    conn = open_db(db)
    try:
        repo = Repository(conn)
        rows = [(p, repo.list_documents(p.id)) for p in repo.list_projects()]
    finally:
        conn.close()

    if not rows:
        console.print(
            Panel("[yellow]No projects yet.[/]\n  Run:  qarag ingest <project> <file>", expand=False)
        )
        return

    table = Table(title=f"Projects in {db}")
    table.add_column("Project", style="bold")
    table.add_column("Documents", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Updated")
    for project, docs in rows:
        table.add_row(
            project.id,
            str(len(docs)),
            str(sum(d.chunk_count for d in docs)),
            project.updated_at or "",
        )
    console.print(table)
