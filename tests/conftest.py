"""Shared pytest fixtures."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from fakes import FakeGateway, build_test_case_table
from qarag.config import QaragConfig
from qarag.db.connection import Database
from qarag.models import Intent


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def make_table():
    return build_test_case_table


@pytest.fixture
def qa_config() -> QaragConfig:
    """Defaults tuned for the bag-of-words fake embedder and fast tests."""
    cfg = QaragConfig()
    cfg.chunking.chunk_size = 300
    cfg.chunking.overlap = 40
    for profile in cfg.retrieval.profiles.values():
        profile.min_similarity = 0.2
    cfg.retry.backoff_base = 0.0
    cfg.engine.request_timeout = 5.0
    return cfg


@pytest.fixture
def tmp_db(tmp_path):
    """File-based store in tmp_path at the current schema, closed after test."""
    conn = Database(tmp_path / ".qarag.db").connect()
    yield conn
    conn.close()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """A workspace for CLI runs: API keys set, a qarag.yaml beside the db, fake providers.

    Returns (db_path, gateway).
    """
    for var in ("QARAG_GENERATION_MODEL", "QARAG_EMBEDDING_MODEL"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("GEMINI_API_KEY", "gm-test")
    monkeypatch.setattr("qarag.config._GLOBAL_CONFIG_PATH", tmp_path / "no-global.yaml")

    (tmp_path / "qarag.yaml").write_text(
        "chunking:\n"
        "  chunk_size: 300\n"
        "  overlap: 40\n"
        "retry:\n"
        "  backoff_base: 0\n"
        "retrieval:\n"
        "  profiles:\n"
        + "".join(f"    {intent.value.lower()}:\n      min_similarity: 0.05\n" for intent in Intent),
        encoding="utf-8",
    )

    gateway = FakeGateway()
    with patch("qarag.cli.store.ProviderGateway") as gw_cls:
        gw_cls.from_config.return_value = gateway
        yield tmp_path / ".qarag.db", gateway
