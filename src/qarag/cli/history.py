"""qarag history: show or clear a project's conversation memory."""

from __future__ import annotations

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

_PREVIEW_CHARS = 200


def history_cmd(
    project: Annotated[str, typer.Argument(help="Project id.")],
    db: Annotated[Path, typer.Option("--db", help="Path to .qarag.db.")] = DEFAULT_DB,
    clear: Annotated[bool, typer.Option("--clear", help="Forget the conversation.")] = False,
) -> None:
    """Show the recent conversation for a project."""
    if not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)

    config = load_cli_config(db)
    conn = open_db(db)
    repo = Repository(conn)
    try:
        state = repo.load_state(project)
        if state is None:
            console.print(err_project_not_found(project))
            raise typer.Exit(1)

        engine = build_engine(config)
        engine.deserialize(state)

        if clear:
            engine.clear_history(project)
            save_project(engine, repo, project)
            console.print(f"[green]✓[/] Cleared conversation history for {project}")
            return

        turns = engine.get_history(project)
    finally:
        conn.close()

    if not turns:
        console.print("[dim]No conversation yet.[/]")
        return
    for turn in turns:
        intent = f" [dim]({turn.intent.value})[/]" if turn.intent else ""
        text = turn.content
        if len(text) > _PREVIEW_CHARS:
            text = text[:_PREVIEW_CHARS].rstrip() + " …"
        console.print(f"[bold]{turn.role}[/]{intent} [dim]{turn.timestamp}[/]", highlight=False)
        console.print(text, markup=False, highlight=False)
