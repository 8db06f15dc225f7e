"""qarag rich error messages: actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from qarag.cli.errors import err_no_db
    console.print(err_no_db(".qarag.db"))
    raise typer.Exit(1)
"""

from __future__ import annotations

from qarag.errors import ErrorKind, QaragError

_ENV_MAP = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "azure": "AZURE_API_KEY",
}


def err_no_api_key(providers: list[str]) -> str:
    """None of the configured providers has an API key.

    Example:
        No API key for any provider in the chain (gemini, openai). Set one of:
          export GEMINI_API_KEY=...
    """
    exports = "\n".join(
        f"    export {_ENV_MAP.get(p.lower(), f'{p.upper()}_API_KEY')}=..." for p in providers
    )
    return (
        f"[red]Error:[/] No API key for any provider in the chain ({', '.join(providers)}).\n"
        f"  Set one of:\n{exports}"
    )


def err_no_db(db_path: str = ".qarag.db") -> str:
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  qarag ingest <project> <file>  to create it."
    )


def err_project_not_found(project_id: str) -> str:
    return (
        f"[red]Error:[/] Project '{project_id}' has no documents or history.\n"
        f"  Run:  qarag ingest {project_id} <file>"
    )


def err_unsupported_file(path: str, ext: str, supported: list[str]) -> str:
    return (
        f"[red]Error:[/] Unsupported file type {ext!r}: {path}\n"
        f"  Supported: {', '.join(sorted(supported))}"
    )


def err_file_not_found(path: str) -> str:
    return f"[red]Error:[/] File not found: {path}\n  Check the path and try again."


def err_empty_document(path: str) -> str:
    return (
        f"[red]Error:[/] No text could be extracted from {path}.\n"
        "  Scanned PDFs need OCR before upload; text files must not be empty."
    )


def err_engine(exc: QaragError) -> str:
    """Render any engine error with a fix-it hint for its kind."""
    hints = {
        ErrorKind.PROVIDER_UNAVAILABLE: "Every model in the provider chain failed. Try again shortly, "
        "or add another provider under generation.providers in qarag.yaml.",
        ErrorKind.PROVIDER_FATAL: "Check the API key and model names in your environment and qarag.yaml.",
        ErrorKind.DIMENSION_MISMATCH: "The embedding model changed since this project was indexed. "
        "Remove the project (qarag remove <project> --yes) and re-ingest.",
        ErrorKind.EMPTY_DOCUMENT: "Upload a document that contains text.",
        ErrorKind.REQUEST_TIMEOUT: "Try again, or raise engine.request_timeout in qarag.yaml.",
        ErrorKind.PROJECT_NOT_FOUND: "Ingest a document into the project first.",
    }
    retry = " (retryable)" if exc.retryable else ""
    return f"[red]Error[/] ({exc.kind.value}){retry}: {exc.message}\n  {hints[exc.kind]}"


def warn_degraded(score: int | None, failed: list[str]) -> str:
    lines = [f"[yellow]⚠ Answer did not fully pass quality checks (score {score}/100):[/]"]
    lines += [f"    - {f}" for f in failed[:5]]
    return "\n".join(lines)
