"""qarag persistence layer."""

from qarag.db.connection import Database
from qarag.db.migrations import CURRENT_VERSION, MIGRATIONS, run_migrations
from qarag.db.repository import Repository

__all__ = [
    "CURRENT_VERSION",
    "Database",
    "MIGRATIONS",
    "Repository",
    "run_migrations",
]
