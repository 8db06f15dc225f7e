"""qarag CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from qarag.cli.ask import ask_cmd
from qarag.cli.history import history_cmd
from qarag.cli.ingest import ingest_cmd
from qarag.cli.projects import projects_cmd
from qarag.cli.remove import remove_cmd
from qarag.cli.store import setup_logging


def _version() -> str:
    try:
        return importlib.metadata.version("qarag")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"qarag {_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="qarag",
    help=(
        "qarag: answer questions from a project's own documents.\n\n"
        "  qarag ingest   Add documents to a project.\n"
        "  qarag ask      Ask a question; routed by intent (test cases, bug reports, ...)."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Log pipeline steps to stderr.")
    ] = False,
) -> None:
    """qarag: project-isolated document QA."""
    setup_logging(verbose)


app.command("ingest")(ingest_cmd)
app.command("ask")(ask_cmd)
app.command("history")(history_cmd)
app.command("projects")(projects_cmd)
app.command("remove")(remove_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed qarag version."""
    typer.echo(f"qarag {_version()}")


if __name__ == "__main__":
    app()
