"""Domain models shared across the QA engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Intent(str, Enum):
    """Closed set of question intents, one workflow each."""

    TEST_CASE_GENERATION = "TEST_CASE_GENERATION"
    BUG_REPORT_FORMATTING = "BUG_REPORT_FORMATTING"
    TEST_PLAN_CREATION = "TEST_PLAN_CREATION"
    AUTOMATION_SUGGESTION = "AUTOMATION_SUGGESTION"
    DOCUMENT_ANALYSIS = "DOCUMENT_ANALYSIS"
    GENERAL_QA_QUESTION = "GENERAL_QA_QUESTION"


class Outcome(str, Enum):
    """How a question was answered.

    COMPLETE: output passed validation.
    DEGRADED: validation retries exhausted; best attempt returned.
    EMPTY_CONTEXT: project has no indexed documents.
    NO_RELEVANT_CONTENT: nothing in the index cleared the similarity floor.
    """

    COMPLETE = "complete"
    DEGRADED = "degraded"
    EMPTY_CONTEXT = "empty_context"
    NO_RELEVANT_CONTENT = "no_relevant_content"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Chunk:
    id: str
    project_id: str
    document_id: str
    text: str
    ordinal: int
    char_range: tuple[int, int]
    section: str | None = None
    embedding: tuple[float, ...] = ()

    def with_embedding(self, vector: list[float]) -> Chunk:
        return Chunk(
            id=self.id,
            project_id=self.project_id,
            document_id=self.document_id,
            text=self.text,
            ordinal=self.ordinal,
            char_range=self.char_range,
            section=self.section,
            embedding=tuple(float(v) for v in vector),
        )


@dataclass(frozen=True)
class SearchHit:
    chunk: Chunk
    similarity: float


@dataclass
class ConversationTurn:
    role: str  # "user" | "assistant"
    content: str
    timestamp: str = field(default_factory=utc_now)
    intent: Intent | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "intent": self.intent.value if self.intent else None,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationTurn:
        intent = data.get("intent")
        return cls(
            role=str(data["role"]),
            content=str(data["content"]),
            timestamp=str(data.get("timestamp") or utc_now()),
            intent=Intent(intent) if intent else None,
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class SourceRef:
    document_id: str
    chunk_ordinal: int
    similarity: float


@dataclass
class WorkflowRequest:
    """Ephemeral per-question input to the orchestrator. Never persisted."""

    project_id: str
    question: str
    history: list[ConversationTurn]
    retrieved_chunks: list[SearchHit] = field(default_factory=list)


@dataclass
class WorkflowResult:
    answer: str
    intent: Intent
    sources: list[SourceRef]
    quality_score: int | None
    attempts: int
    outcome: Outcome = Outcome.COMPLETE
    model: str | None = None
    failed_checks: list[str] = field(default_factory=list)
    trace: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class IngestResult:
    document_id: str
    chunk_count: int
