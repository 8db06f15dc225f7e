"""Tests for the shared CLI plumbing in qarag.cli.store."""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock, MagicMock, patch

import litellm
import pytest

from qarag.cli.store import build_engine
from qarag.config import ProviderCfg, QaragConfig


def _completion(content):
    response = MagicMock()
    response.choices[0].message.content = content
    return response


@pytest.fixture
def openai_only(monkeypatch):
    for var in ("GEMINI_API_KEY", "QARAG_GENERATION_MODEL", "QARAG_EMBEDDING_MODEL"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")


def test_build_engine_drops_providers_without_key(openai_only):
    config = QaragConfig()
    assert [p.name for p in config.generation.providers] == ["gemini", "openai"]

    build_engine(config)

    assert [p.name for p in config.generation.providers] == ["openai"]
    assert [p.name for p in config.embedding.providers] == ["openai"]


def test_build_engine_logs_dropped_providers(openai_only, caplog):
    with caplog.at_level(logging.INFO, logger="qarag.cli.store"):
        build_engine(QaragConfig())
    assert "Skipping generation providers without an API key: gemini" in caplog.text


def test_build_engine_keeps_chain_when_no_provider_has_key(monkeypatch):
    for var in ("GEMINI_API_KEY", "OPENAI_API_KEY", "QARAG_GENERATION_MODEL", "QARAG_EMBEDDING_MODEL"):
        monkeypatch.delenv(var, raising=False)
    config = QaragConfig()
    build_engine(config)
    assert [p.name for p in config.generation.providers] == ["gemini", "openai"]


def test_local_provider_needs_no_key(openai_only):
    config = QaragConfig()
    config.generation.providers = [
        ProviderCfg(name="gemini", models=["gemini/gemini-2.5-flash"]),
        ProviderCfg(name="ollama", models=["ollama/llama3"]),
    ]
    build_engine(config)
    assert [p.name for p in config.generation.providers] == ["ollama"]


@pytest.mark.asyncio
async def test_keyless_provider_is_never_called(openai_only):
    async def fake_completion(*, model, **kwargs):
        if model.startswith("gemini/"):
            raise litellm.AuthenticationError(message="missing key", llm_provider="gemini", model=model)
        return _completion("Login locks after five attempts.")

    engine = build_engine(QaragConfig())
    with patch("qarag.rag.gateway.litellm.acompletion", new=AsyncMock(side_effect=fake_completion)) as mock:
        result = await engine._gateway.generate([{"role": "user", "content": "When does login lock?"}])

    assert result.model == "openai/gpt-4o-mini"
    assert [c.kwargs["model"] for c in mock.call_args_list] == ["openai/gpt-4o-mini"]
