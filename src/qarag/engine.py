"""QAEngine: the public entry point for project-isolated question answering.

Each project owns one ProjectContext holding its VectorIndex and
ConversationMemory. Contexts live on the engine instance; nothing is shared
between projects and there is no module-level state.

Concurrency:
  - Ingest and removal for one project are serialised by an asyncio.Lock.
    Searches read a consistent index snapshot and never wait on it.
  - Identical in-flight questions for one project share a single run.
  - A run that exceeds ``engine.request_timeout`` raises RequestTimeout and
    writes nothing to memory; the question and answer turns are committed
    together only after the run succeeds.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field

from qarag.config import QaragConfig
from qarag.errors import ProjectNotFound, RequestTimeout
from qarag.ingest.chunker import Chunker
from qarag.models import (
    ConversationTurn,
    IngestResult,
    WorkflowRequest,
    WorkflowResult,
)
from qarag.rag.embedder import Embedder
from qarag.rag.gateway import Gateway, ProviderGateway
from qarag.rag.index import VectorIndex
from qarag.rag.memory import ConversationMemory
from qarag.rag.orchestrator import WorkflowOrchestrator

logger = logging.getLogger(__name__)

_FORMAT_VERSION = 1


@dataclass
class ProjectContext:
    project_id: str
    index: VectorIndex
    memory: ConversationMemory
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    inflight: dict[str, asyncio.Future[WorkflowResult]] = field(default_factory=dict)


def normalize_question(question: str) -> str:
    return re.sub(r"\s+", " ", question.strip().lower())


class QAEngine:
    def __init__(self, config: QaragConfig | None = None, gateway: Gateway | None = None) -> None:
        self.config = config or QaragConfig()
        self._gateway = gateway or ProviderGateway.from_config(self.config)
        self._chunker = Chunker(self.config.chunking.chunk_size, self.config.chunking.overlap)
        self._embedder = Embedder(self._gateway, self.config.embedding.batch_size)
        self._orchestrator = WorkflowOrchestrator(
            self._gateway, self.config, embedder=self._embedder
        )
        self._projects: dict[str, ProjectContext] = {}

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def open_project(self, project_id: str) -> ProjectContext:
        """Return the context for *project_id*, creating an empty one if needed."""
        if not project_id or not project_id.strip():
            raise ValueError("project_id must be a non-empty string")
        ctx = self._projects.get(project_id)
        if ctx is None:
            ctx = ProjectContext(
                project_id=project_id,
                index=VectorIndex(project_id, self.config.embedding.dimensions),
                memory=ConversationMemory(project_id, self.config.memory.max_turns),
            )
            self._projects[project_id] = ctx
        return ctx

    def get_project(self, project_id: str) -> ProjectContext:
        ctx = self._projects.get(project_id)
        if ctx is None:
            raise ProjectNotFound(project_id)
        return ctx

    def project_ids(self) -> list[str]:
        return list(self._projects)

    def delete_project(self, project_id: str) -> bool:
        """Drop the project with its index and memory. Returns False if unknown."""
        ctx = self._projects.pop(project_id, None)
        if ctx is None:
            return False
        for task in ctx.inflight.values():
            task.cancel()
        logger.info("Deleted project %s", project_id)
        return True

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def ingest_document(self, project_id: str, document_id: str, text: str) -> IngestResult:
        """Chunk, embed and index *text*, replacing any earlier version of the document.

        Raises:
            EmptyDocumentError: *text* is empty or whitespace.
            DimensionMismatch: Embeddings do not fit the project's index.
            ProviderUnavailable: No embedding provider could serve the request.
        """
        chunks = self._chunker.chunk(project_id, document_id, text)
        ctx = self.open_project(project_id)

        async with ctx.write_lock:
            vectors = await self._embedder.embed(
                [c.text for c in chunks], expected_dimension=ctx.index.dimension
            )
            embedded = [c.with_embedding(v) for c, v in zip(chunks, vectors)]
            replaced = ctx.index.replace_document(document_id, embedded)

        logger.info(
            "Project %s: indexed %s (%d chunks%s)",
            project_id,
            document_id,
            len(embedded),
            f", replaced {replaced}" if replaced else "",
        )
        return IngestResult(document_id=document_id, chunk_count=len(embedded))

    async def remove_document(self, project_id: str, document_id: str) -> int:
        ctx = self.get_project(project_id)
        async with ctx.write_lock:
            return ctx.index.remove(document_id)

    def document_ids(self, project_id: str) -> list[str]:
        return self.get_project(project_id).index.document_ids()

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    async def ask(self, project_id: str, question: str) -> WorkflowResult:
        """Answer *question* from the project's documents.

        Raises:
            ValueError: *question* is empty.
            ProjectNotFound: *project_id* was never opened, or was deleted while
                the question was in flight.
            RequestTimeout: The run exceeded ``engine.request_timeout``.
            ProviderUnavailable, ProviderFatalError: Generation failed.
        """
        if not question or not question.strip():
            raise ValueError("question must be a non-empty string")
        ctx = self.get_project(project_id)

        key = normalize_question(question)
        task = ctx.inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._answer(ctx, question))
            ctx.inflight[key] = task

            def _forget(done: asyncio.Future[WorkflowResult]) -> None:
                if ctx.inflight.get(key) is done:
                    del ctx.inflight[key]

            task.add_done_callback(_forget)
        else:
            logger.debug("Project %s: joining in-flight request %r", project_id, key)

        # shield: one caller giving up must not cancel the run for the others.
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            caller = asyncio.current_task()
            if task.cancelled() and not (caller and caller.cancelling()):
                # The shared run was cancelled by delete_project.
                raise ProjectNotFound(project_id) from None
            raise

    async def _answer(self, ctx: ProjectContext, question: str) -> WorkflowResult:
        request = WorkflowRequest(
            project_id=ctx.project_id,
            question=question,
            history=ctx.memory.turns(),
        )
        timeout = self.config.engine.request_timeout
        try:
            result = await asyncio.wait_for(self._orchestrator.run(request, ctx.index), timeout)
        except asyncio.TimeoutError:
            raise RequestTimeout(
                f"Request for project '{ctx.project_id}' timed out after {timeout:g}s."
            ) from None

        metadata = {
            "outcome": result.outcome.value,
            "documents_used": sorted({s.document_id for s in result.sources}),
            "quality_score": result.quality_score,
            "model": result.model,
        }
        ctx.memory.extend(
            [
                ConversationTurn(role="user", content=question, intent=result.intent),
                ConversationTurn(
                    role="assistant",
                    content=result.answer,
                    intent=result.intent,
                    metadata=metadata,
                ),
            ]
        )
        return result

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_history(self, project_id: str) -> list[ConversationTurn]:
        return self.get_project(project_id).memory.turns()

    def clear_history(self, project_id: str) -> None:
        self.get_project(project_id).memory.clear()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def serialize(self, project_id: str) -> bytes:
        """Snapshot the project's index and conversation log as bytes."""
        ctx = self.get_project(project_id)
        payload = {
            "version": _FORMAT_VERSION,
            "project_id": project_id,
            "index": ctx.index.to_dict(),
            "memory": ctx.memory.to_dict(),
        }
        return json.dumps(payload).encode("utf-8")

    def deserialize(self, data: bytes) -> ProjectContext:
        """Restore a project snapshot, replacing any open context with the same id."""
        payload = json.loads(data.decode("utf-8"))
        if payload.get("version") != _FORMAT_VERSION:
            raise ValueError(f"Unsupported project format version: {payload.get('version')!r}")
        project_id = str(payload["project_id"])
        index = VectorIndex.from_dict(payload["index"])
        memory = ConversationMemory.from_dict(payload["memory"], self.config.memory.max_turns)
        if index.project_id != project_id or memory.project_id != project_id:
            raise ValueError("Snapshot index/memory belong to a different project")
        ctx = ProjectContext(project_id=project_id, index=index, memory=memory)
        self._projects[project_id] = ctx
        return ctx
