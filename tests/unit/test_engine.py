"""End-to-end tests for QAEngine with fake and patched provider back ends."""

from __future__ import annotations

import asyncio
import re
from unittest.mock import AsyncMock, MagicMock, patch

import litellm
import pytest

from fakes import FakeGateway, bow_vector, build_test_case_table
from qarag.config import ProviderCfg
from qarag.engine import QAEngine, normalize_question
from qarag.errors import (
    DimensionMismatch,
    EmptyDocumentError,
    ProjectNotFound,
    ProviderUnavailable,
    RequestTimeout,
)
from qarag.models import Intent, Outcome

SPEC_DOC = """\
## Login

The login form takes an email and a password. A login with a wrong password shows an error.
Five failed login attempts lock the account for fifteen minutes. A locked login is reset by email link.

## Checkout

The checkout page lists cart items with prices. Shoppers pay by card or voucher.
A successful payment shows an order number and sends a receipt. Declined cards keep the cart intact.
"""

BILLING_DOC = (
    "Invoices are issued monthly. Billing supports card payments and refunds. "
    "Refunds settle within ten business days."
)


def _engine(qa_config, gateway=None) -> QAEngine:
    return QAEngine(qa_config, gateway or FakeGateway())


def _table_for_requested_module(messages) -> str:
    module = re.search(r"TC_([A-Z0-9_]+?)_001", messages[1]["content"]).group(1)
    return build_test_case_table(module, 12)


# ------------------------------------------------------------------
# End-to-end scenarios
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_test_cases_grounded_in_login_section(qa_config):
    qa_config.retrieval.profiles[Intent.TEST_CASE_GENERATION].min_similarity = 0.3
    gw = FakeGateway([_table_for_requested_module])
    engine = _engine(qa_config, gw)
    engine.open_project("shop")
    await engine.ingest_document("shop", "spec.md", SPEC_DOC)

    result = await engine.ask("shop", "Generate test cases for login")

    assert result.intent is Intent.TEST_CASE_GENERATION
    assert result.outcome is Outcome.COMPLETE
    assert len(re.findall(r"\| TC_LOGIN_\d{3} \|", result.answer)) >= 10
    assert "checkout" not in result.answer.lower()

    sections = {c.ordinal: c.section for c in engine.get_project("shop").index.chunks()}
    assert result.sources
    assert {sections[s.chunk_ordinal] for s in result.sources} == {"Login"}
    context = gw.generate_calls[0][0]["content"]
    assert "login form takes an email" in context
    assert "checkout page lists cart items" not in context


@pytest.mark.asyncio
async def test_follow_up_resolves_feature_from_memory(qa_config):
    qa_config.retrieval.profiles[Intent.TEST_CASE_GENERATION].min_similarity = 0.1
    gw = FakeGateway(
        [
            "The login feature takes an email and password and locks after five failures.",
            _table_for_requested_module,
        ]
    )
    engine = _engine(qa_config, gw)
    engine.open_project("shop")
    await engine.ingest_document("shop", "spec.md", SPEC_DOC)

    first = await engine.ask("shop", "Tell me about the login feature")
    second = await engine.ask("shop", "Generate test cases for that feature")

    assert first.intent is Intent.GENERAL_QA_QUESTION
    assert second.intent is Intent.TEST_CASE_GENERATION
    assert "login" not in "Generate test cases for that feature".lower()
    second_context = gw.generate_calls[1][0]["content"]
    assert "login form takes an email" in second_context
    assert "TC_LOGIN_001" in second.answer
    assert "Previously discussed features: login" in second_context


@pytest.mark.asyncio
async def test_generation_falls_back_to_next_model(qa_config):
    qa_config.generation.providers = [
        ProviderCfg(name="gemini", models=["gemini/model-a", "gemini/model-b"])
    ]
    qa_config.embedding.providers = [ProviderCfg(name="openai", models=["openai/embed"])]

    async def fake_completion(**kwargs):
        if kwargs["model"] == "gemini/model-a":
            raise litellm.NotFoundError(
                message="model not found", model="gemini/model-a", llm_provider="gemini"
            )
        response = MagicMock()
        response.choices[0].message.content = "Login locks the account after five failed attempts."
        return response

    async def fake_embedding(**kwargs):
        response = MagicMock()
        response.data = [{"embedding": bow_vector(t)} for t in kwargs["input"]]
        return response

    with (
        patch("qarag.rag.gateway.litellm.acompletion", AsyncMock(side_effect=fake_completion)) as completion,
        patch("qarag.rag.gateway.litellm.aembedding", AsyncMock(side_effect=fake_embedding)),
    ):
        engine = QAEngine(qa_config)
        engine.open_project("shop")
        await engine.ingest_document("shop", "spec.md", SPEC_DOC)
        result = await engine.ask("shop", "Explain the login lockout")

    assert result.model == "gemini/model-b"
    assert [c.kwargs["model"] for c in completion.call_args_list] == [
        "gemini/model-a",
        "gemini/model-b",
    ]
    assert engine.get_history("shop")[-1].metadata["model"] == "gemini/model-b"


@pytest.mark.asyncio
async def test_empty_project_signals_empty_context(qa_config):
    gw = FakeGateway()
    engine = _engine(qa_config, gw)
    engine.open_project("empty")

    result = await engine.ask("empty", "Generate test cases for login")

    assert result.intent is Intent.TEST_CASE_GENERATION
    assert result.outcome is Outcome.EMPTY_CONTEXT
    assert result.sources == []
    assert "TC_" not in result.answer
    assert gw.generate_calls == []


# ------------------------------------------------------------------
# Project isolation and lifecycle
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_projects_never_share_chunks(qa_config):
    engine = _engine(qa_config)
    engine.open_project("a")
    engine.open_project("b")
    await engine.ingest_document("a", "spec.md", SPEC_DOC)
    await engine.ingest_document("b", "billing.md", BILLING_DOC)

    result = await engine.ask("b", "Explain the login lockout")

    assert engine.document_ids("a") == ["spec.md"]
    assert engine.document_ids("b") == ["billing.md"]
    assert all(s.document_id == "billing.md" for s in result.sources)
    assert engine.get_history("a") == []


@pytest.mark.asyncio
async def test_ask_unknown_project(qa_config):
    engine = _engine(qa_config)
    with pytest.raises(ProjectNotFound):
        await engine.ask("ghost", "Explain login")


@pytest.mark.asyncio
async def test_ask_empty_question(qa_config):
    engine = _engine(qa_config)
    engine.open_project("p1")
    with pytest.raises(ValueError):
        await engine.ask("p1", "   ")


def test_open_project_requires_id(qa_config):
    with pytest.raises(ValueError):
        _engine(qa_config).open_project(" ")


def test_open_project_is_idempotent(qa_config):
    engine = _engine(qa_config)
    assert engine.open_project("p1") is engine.open_project("p1")
    assert engine.project_ids() == ["p1"]


@pytest.mark.asyncio
async def test_delete_project(qa_config):
    engine = _engine(qa_config)
    engine.open_project("p1")
    await engine.ingest_document("p1", "spec.md", SPEC_DOC)

    assert engine.delete_project("p1") is True
    assert engine.delete_project("p1") is False
    with pytest.raises(ProjectNotFound):
        engine.get_project("p1")
    with pytest.raises(ProjectNotFound):
        await engine.ask("p1", "Explain login")

    # re-opening starts from scratch
    assert engine.open_project("p1").index.is_empty


# ------------------------------------------------------------------
# Ingestion
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_ingest_reports_chunk_count(qa_config):
    engine = _engine(qa_config)
    result = await engine.ingest_document("p1", "spec.md", SPEC_DOC)
    assert result.document_id == "spec.md"
    assert result.chunk_count == len(engine.get_project("p1").index) >= 2


@pytest.mark.asyncio
async def test_reingest_replaces_document(qa_config):
    engine = _engine(qa_config)
    await engine.ingest_document("p1", "spec.md", SPEC_DOC)
    await engine.ingest_document("p1", "spec.md", BILLING_DOC)

    chunks = engine.get_project("p1").index.chunks()
    assert len(chunks) == 1
    assert "Invoices" in chunks[0].text


@pytest.mark.asyncio
async def test_empty_document_rejected(qa_config):
    gw = FakeGateway()
    engine = _engine(qa_config, gw)
    await engine.ingest_document("p1", "spec.md", SPEC_DOC)
    with pytest.raises(EmptyDocumentError):
        await engine.ingest_document("p1", "blank.md", " \n ")
    assert engine.document_ids("p1") == ["spec.md"]


@pytest.mark.asyncio
async def test_empty_document_does_not_create_project(qa_config):
    engine = _engine(qa_config)
    with pytest.raises(EmptyDocumentError):
        await engine.ingest_document("fresh", "blank.md", "   ")
    assert engine.project_ids() == []
    with pytest.raises(ProjectNotFound):
        engine.get_project("fresh")


@pytest.mark.asyncio
async def test_embedding_dimension_change_rejected(qa_config):
    gw = FakeGateway(dimension=256)
    engine = _engine(qa_config, gw)
    await engine.ingest_document("p1", "spec.md", SPEC_DOC)
    before = engine.get_project("p1").index.chunks()

    gw.dimension = 128
    with pytest.raises(DimensionMismatch):
        await engine.ingest_document("p1", "billing.md", BILLING_DOC)
    assert engine.get_project("p1").index.chunks() == before


@pytest.mark.asyncio
async def test_remove_document(qa_config):
    engine = _engine(qa_config)
    await engine.ingest_document("p1", "spec.md", SPEC_DOC)
    await engine.ingest_document("p1", "billing.md", BILLING_DOC)

    assert await engine.remove_document("p1", "spec.md") >= 2
    assert engine.document_ids("p1") == ["billing.md"]
    assert await engine.remove_document("p1", "spec.md") == 0


# ------------------------------------------------------------------
# Memory
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_turns_recorded_with_metadata(qa_config):
    engine = _engine(qa_config)
    await engine.ingest_document("p1", "spec.md", SPEC_DOC)
    result = await engine.ask("p1", "Explain the login lockout")

    user, assistant = engine.get_history("p1")
    assert user.role == "user" and user.content == "Explain the login lockout"
    assert assistant.role == "assistant" and assistant.content == result.answer
    assert user.intent is assistant.intent is Intent.DOCUMENT_ANALYSIS
    assert assistant.metadata["outcome"] == "complete"
    assert assistant.metadata["documents_used"] == ["spec.md"]
    assert assistant.metadata["quality_score"] == result.quality_score
    assert assistant.metadata["model"] == "fake/model"


@pytest.mark.asyncio
async def test_memory_is_bounded_fifo(qa_config):
    qa_config.memory.max_turns = 4
    engine = _engine(qa_config)
    await engine.ingest_document("p1", "spec.md", SPEC_DOC)
    for i in range(3):
        await engine.ask("p1", f"Explain login rule {i}")

    history = engine.get_history("p1")
    assert len(history) == 4
    assert history[0].content == "Explain login rule 1"
    assert history[-2].content == "Explain login rule 2"


@pytest.mark.asyncio
async def test_clear_history(qa_config):
    engine = _engine(qa_config)
    engine.open_project("p1")
    await engine.ask("p1", "Explain login")
    engine.clear_history("p1")
    assert engine.get_history("p1") == []


@pytest.mark.asyncio
async def test_failed_request_leaves_memory_untouched(qa_config):
    gw = FakeGateway([ProviderUnavailable("all down")])
    engine = _engine(qa_config, gw)
    await engine.ingest_document("p1", "spec.md", SPEC_DOC)
    with pytest.raises(ProviderUnavailable):
        await engine.ask("p1", "Explain the login lockout")
    assert engine.get_history("p1") == []


# ------------------------------------------------------------------
# Concurrency
# ------------------------------------------------------------------


def test_normalize_question():
    assert normalize_question("  Explain   the LOGIN\tpage ") == "explain the login page"


@pytest.mark.asyncio
async def test_identical_inflight_questions_share_one_run(qa_config):
    gw = FakeGateway(delay=0.05)
    engine = _engine(qa_config, gw)
    await engine.ingest_document("p1", "spec.md", SPEC_DOC)

    first, second = await asyncio.gather(
        engine.ask("p1", "Explain the login lockout"),
        engine.ask("p1", "explain the  login lockout"),
    )

    assert first is second
    assert len(gw.generate_calls) == 1
    assert len(engine.get_history("p1")) == 2
    assert engine.get_project("p1").inflight == {}


@pytest.mark.asyncio
async def test_different_projects_run_independently(qa_config):
    gw = FakeGateway(delay=0.05)
    engine = _engine(qa_config, gw)
    await engine.ingest_document("a", "spec.md", SPEC_DOC)
    await engine.ingest_document("b", "spec.md", SPEC_DOC)

    await asyncio.gather(
        engine.ask("a", "Explain the login lockout"),
        engine.ask("b", "Explain the login lockout"),
    )
    assert len(gw.generate_calls) == 2
    assert len(engine.get_history("a")) == len(engine.get_history("b")) == 2


@pytest.mark.asyncio
async def test_request_timeout(qa_config):
    qa_config.engine.request_timeout = 0.05
    gw = FakeGateway(delay=1.0)
    engine = _engine(qa_config, gw)
    await engine.ingest_document("p1", "spec.md", SPEC_DOC)

    with pytest.raises(RequestTimeout) as info:
        await engine.ask("p1", "Explain the login lockout")

    assert info.value.retryable is True
    assert engine.get_history("p1") == []
    assert engine.get_project("p1").inflight == {}


@pytest.mark.asyncio
async def test_delete_project_fails_inflight_questions_with_typed_error(qa_config):
    gw = FakeGateway(delay=0.2)
    engine = _engine(qa_config, gw)
    await engine.ingest_document("p1", "spec.md", SPEC_DOC)

    pending = asyncio.gather(
        engine.ask("p1", "Explain the login lockout"),
        engine.ask("p1", "Explain the login lockout"),
        return_exceptions=True,
    )
    await asyncio.sleep(0.05)
    assert engine.delete_project("p1")

    results = await pending
    assert all(isinstance(r, ProjectNotFound) for r in results)
    assert results[0].project_id == "p1"
    assert engine.project_ids() == []


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_stop_shared_run(qa_config):
    gw = FakeGateway(delay=0.1)
    engine = _engine(qa_config, gw)
    await engine.ingest_document("p1", "spec.md", SPEC_DOC)

    impatient = asyncio.ensure_future(engine.ask("p1", "Explain the login lockout"))
    patient = asyncio.ensure_future(engine.ask("p1", "Explain the login lockout"))
    await asyncio.sleep(0.02)
    impatient.cancel()

    with pytest.raises(asyncio.CancelledError):
        await impatient
    result = await patient
    assert result.answer
    assert len(gw.generate_calls) == 1
    assert len(engine.get_history("p1")) == 2


# ------------------------------------------------------------------
# Persistence
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_snapshot_round_trip(qa_config):
    engine = _engine(qa_config)
    await engine.ingest_document("p1", "spec.md", SPEC_DOC)
    await engine.ask("p1", "Explain the login lockout")
    snapshot = engine.serialize("p1")

    restored = _engine(qa_config)
    ctx = restored.deserialize(snapshot)

    assert ctx.project_id == "p1"
    assert restored.document_ids("p1") == ["spec.md"]
    assert ctx.index.chunks() == engine.get_project("p1").index.chunks()
    assert restored.get_history("p1") == engine.get_history("p1")

    result = await restored.ask("p1", "Explain the login lockout again")
    assert {s.document_id for s in result.sources} == {"spec.md"}


def test_snapshot_version_checked(qa_config):
    engine = _engine(qa_config)
    with pytest.raises(ValueError, match="version"):
        engine.deserialize(b'{"version": 9, "project_id": "p1"}')


def test_serialize_unknown_project(qa_config):
    with pytest.raises(ProjectNotFound):
        _engine(qa_config).serialize("ghost")
