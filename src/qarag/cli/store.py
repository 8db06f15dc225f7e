"""Shared CLI plumbing: open the store, rebuild an engine, persist it again.

Commands load one project's snapshot from the SQLite store into a fresh
QAEngine, run, and write the snapshot back. Config comes from the
directory that holds the database (qarag.yaml next to .qarag.db).
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from qarag.cli.errors import err_no_api_key
from qarag.config import QaragConfig, load_config, usable_providers
from qarag.db.connection import Database
from qarag.db.repository import Repository
from qarag.engine import QAEngine
from qarag.rag.gateway import ProviderGateway

logger = logging.getLogger(__name__)

console = Console()

DEFAULT_DB = Path(".qarag.db")


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def open_db(db_path: Path) -> sqlite3.Connection:
    return Database(db_path).connect()


def load_cli_config(db_path: Path) -> QaragConfig:
    return load_config(project_dir=db_path.resolve().parent)


def require_api_keys(config: QaragConfig, *, generation: bool) -> None:
    """Exit with an actionable message when no provider in a chain has a key."""
    chains = [config.embedding.providers]
    if generation:
        chains.append(config.generation.providers)
    for providers in chains:
        if not usable_providers(providers):
            console.print(err_no_api_key([p.name for p in providers]))
            raise typer.Exit(1)


def build_engine(config: QaragConfig) -> QAEngine:
    """Engine whose provider chains skip providers that have no API key.

    A chain with no usable provider is left as configured; commands that call
    it have already stopped in require_api_keys.
    """
    for section, cfg in (("generation", config.generation), ("embedding", config.embedding)):
        usable = usable_providers(cfg.providers)
        dropped = [p.name for p in cfg.providers if p not in usable]
        if usable and dropped:
            logger.info("Skipping %s providers without an API key: %s", section, ", ".join(dropped))
            cfg.providers = usable
    return QAEngine(config, ProviderGateway.from_config(config))


def load_project(engine: QAEngine, repo: Repository, project_id: str) -> None:
    """Restore *project_id* into *engine* from the store, or open it empty."""
    state = repo.load_state(project_id)
    if state is None:
        engine.open_project(project_id)
    else:
        engine.deserialize(state)


def save_project(engine: QAEngine, repo: Repository, project_id: str) -> None:
    repo.save_state(project_id, engine.serialize(project_id))
