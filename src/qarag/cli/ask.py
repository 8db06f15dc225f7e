"""qarag ask: answer a question from a project's documents.

Usage:
  qarag ask checkout-app "Generate test cases for the login feature"
  qarag ask checkout-app "do the same for checkout"

The answer and the question are appended to the project's conversation
memory, so follow-up questions resolve against earlier turns.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.markdown import Markdown
from rich.table import Table

from qarag.cli.errors import err_engine, err_no_db, err_project_not_found, warn_degraded
from qarag.cli.store import (
    DEFAULT_DB,
    build_engine,
    console,
    load_cli_config,
    open_db,
    require_api_keys,
    save_project,
)
from qarag.db.repository import Repository
from qarag.errors import QaragError
from qarag.models import Outcome, WorkflowResult


def ask_cmd(
    project: Annotated[str, typer.Argument(help="Project id.")],
    question: Annotated[str, typer.Argument(help="Question or request.")],
    db: Annotated[Path, typer.Option("--db", help="Path to .qarag.db.")] = DEFAULT_DB,
    show_sources: Annotated[
        bool, typer.Option("--sources/--no-sources", help="List the chunks the answer used.")
    ] = True,
) -> None:
    """Ask a question about a project's documents."""
    if not question.strip():
        console.print("[red]Error:[/] Question is empty.")
        raise typer.Exit(1)
    if not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)

    config = load_cli_config(db)
    require_api_keys(config, generation=True)

    conn = open_db(db)
    repo = Repository(conn)
    try:
        state = repo.load_state(project)
        if state is None:
            console.print(err_project_not_found(project))
            raise typer.Exit(1)

        engine = build_engine(config)
        engine.deserialize(state)
        try:
            result = asyncio.run(engine.ask(project, question))
        except QaragError as exc:
            console.print(err_engine(exc))
            raise typer.Exit(1)

        save_project(engine, repo, project)
    finally:
        conn.close()

    _render(result, show_sources)


def _render(result: WorkflowResult, show_sources: bool) -> None:
    console.print(f"[dim]Intent: {result.intent.value}  |  attempts: {result.attempts}[/]")
    console.print(Markdown(result.answer))

    if result.outcome is Outcome.DEGRADED:
        console.print(warn_degraded(result.quality_score, result.failed_checks))

    if show_sources and result.sources:
        table = Table(title="Sources", show_lines=False)
        table.add_column("Document")
        table.add_column("Chunk", justify="right")
        table.add_column("Similarity", justify="right")
        for src in result.sources:
            table.add_row(src.document_id, str(src.chunk_ordinal), f"{src.similarity:.3f}")
        console.print(table)
