"""Workflow orchestrator: an explicit state machine per question.

  CLASSIFY → RETRIEVE → BUILD_PROMPT → GENERATE → VALIDATE
                 │                          │         ├─→ COMPLETE
                 └─→ COMPLETE (no context)  └─→ FAIL  └─→ RETRY → BUILD_PROMPT

Each state has one handler that returns the next state; TRANSITIONS lists
the legal moves and anything else is a bug. Intents plug in through the
TEMPLATES and RULE_SETS tables, so a new intent never touches this module.

Validation retries are bounded by ``validation.max_retries``. When they run
out, the best-scoring attempt is returned with outcome DEGRADED rather than
raising. Provider errors end in FAIL and propagate unchanged.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from qarag.config import QaragConfig, RetrievalProfile
from qarag.errors import QaragError
from qarag.generate.templates import PromptComponents, build_prompt
from qarag.models import (
    Intent,
    Outcome,
    SearchHit,
    SourceRef,
    WorkflowRequest,
    WorkflowResult,
)
from qarag.rag.embedder import Embedder
from qarag.rag.gateway import Gateway
from qarag.rag.index import VectorIndex
from qarag.rag.intent import IntentClassifier, resolve_query
from qarag.rag.validator import OutputValidator, ValidationReport, improvement_prompt

logger = logging.getLogger(__name__)

EMPTY_CONTEXT_ANSWER = (
    "No documents have been indexed for this project yet. "
    "Upload the project documents, then ask again."
)
NO_RELEVANT_CONTENT_ANSWER = (
    "I could not find relevant information in the project documents to answer this question."
)


class WorkflowState(str, Enum):
    CLASSIFY = "classify"
    RETRIEVE = "retrieve"
    BUILD_PROMPT = "build_prompt"
    GENERATE = "generate"
    VALIDATE = "validate"
    RETRY = "retry"
    COMPLETE = "complete"
    FAIL = "fail"


TRANSITIONS: dict[WorkflowState, frozenset[WorkflowState]] = {
    WorkflowState.CLASSIFY: frozenset({WorkflowState.RETRIEVE}),
    WorkflowState.RETRIEVE: frozenset({WorkflowState.BUILD_PROMPT, WorkflowState.COMPLETE}),
    WorkflowState.BUILD_PROMPT: frozenset({WorkflowState.GENERATE}),
    WorkflowState.GENERATE: frozenset({WorkflowState.VALIDATE, WorkflowState.FAIL}),
    WorkflowState.VALIDATE: frozenset({WorkflowState.COMPLETE, WorkflowState.RETRY}),
    WorkflowState.RETRY: frozenset({WorkflowState.BUILD_PROMPT}),
    WorkflowState.COMPLETE: frozenset(),
    WorkflowState.FAIL: frozenset(),
}

_TERMINAL = frozenset({WorkflowState.COMPLETE, WorkflowState.FAIL})


@dataclass
class _Attempt:
    text: str
    model: str
    report: ValidationReport
    prompt: PromptComponents


@dataclass
class _Run:
    request: WorkflowRequest
    intent: Intent = Intent.GENERAL_QA_QUESTION
    profile: RetrievalProfile = field(default_factory=RetrievalProfile)
    prompt: PromptComponents | None = None
    pending: tuple[str, str] | None = None  # (text, model) awaiting validation
    last: _Attempt | None = None
    best: _Attempt | None = None
    attempts: int = 0
    outcome: Outcome = Outcome.COMPLETE
    answer: str = ""
    error: QaragError | None = None
    trace: list[str] = field(default_factory=list)


class WorkflowOrchestrator:
    def __init__(
        self,
        gateway: Gateway,
        config: QaragConfig,
        *,
        embedder: Embedder | None = None,
        classifier: IntentClassifier | None = None,
        validator: OutputValidator | None = None,
    ) -> None:
        self._gateway = gateway
        self._config = config
        self._embedder = embedder or Embedder(gateway, config.embedding.batch_size)
        self._classifier = classifier or IntentClassifier(config.memory.classifier_turns)
        self._validator = validator or OutputValidator(
            config.validation.quality_threshold, config.validation.min_test_cases
        )
        self._handlers: dict[WorkflowState, Callable[[_Run, VectorIndex], Awaitable[WorkflowState]]] = {
            WorkflowState.CLASSIFY: self._classify,
            WorkflowState.RETRIEVE: self._retrieve,
            WorkflowState.BUILD_PROMPT: self._build_prompt,
            WorkflowState.GENERATE: self._generate,
            WorkflowState.VALIDATE: self._validate,
            WorkflowState.RETRY: self._retry,
        }

    async def run(self, request: WorkflowRequest, index: VectorIndex) -> WorkflowResult:
        """Drive *request* through the state machine against *index*.

        Raises:
            ProviderUnavailable, ProviderFatalError: Generation failed.
            DimensionMismatch: Query embedding does not fit the index.
        """
        run = _Run(request=request)
        state = WorkflowState.CLASSIFY
        while state not in _TERMINAL:
            nxt = await self._handlers[state](run, index)
            if nxt not in TRANSITIONS[state]:
                raise RuntimeError(f"Illegal workflow transition {state.value} -> {nxt.value}")
            run.trace.append(f"{state.value}->{nxt.value}")
            state = nxt

        if state is WorkflowState.FAIL:
            assert run.error is not None
            raise run.error
        return _result(run)

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------

    async def _classify(self, run: _Run, index: VectorIndex) -> WorkflowState:
        run.intent = self._classifier.classify(run.request.question, run.request.history)
        run.profile = self._config.retrieval.profile(run.intent)
        logger.info("Project %s: intent %s", run.request.project_id, run.intent.value)
        return WorkflowState.RETRIEVE

    async def _retrieve(self, run: _Run, index: VectorIndex) -> WorkflowState:
        profile = run.profile
        if profile.k <= 0:
            return WorkflowState.BUILD_PROMPT

        if index.is_empty:
            if profile.requires_context:
                run.outcome = Outcome.EMPTY_CONTEXT
                run.answer = EMPTY_CONTEXT_ANSWER
                return WorkflowState.COMPLETE
            return WorkflowState.BUILD_PROMPT

        query = resolve_query(run.request.question, run.request.history)
        vector = await self._embedder.embed_one(query, index.dimension)
        hits = index.search(vector, profile.k, profile.min_similarity)
        run.request.retrieved_chunks = hits

        if not hits and profile.requires_context:
            closest = index.search(vector, 1)
            run.outcome = Outcome.NO_RELEVANT_CONTENT
            run.answer = NO_RELEVANT_CONTENT_ANSWER
            if closest:
                run.answer += (
                    f" (Closest match scored {closest[0].similarity:.2f}, "
                    f"below the {profile.min_similarity:.2f} relevance threshold.)"
                )
            return WorkflowState.COMPLETE
        return WorkflowState.BUILD_PROMPT

    async def _build_prompt(self, run: _Run, index: VectorIndex) -> WorkflowState:
        improvement = None
        if run.last is not None:
            improvement = improvement_prompt(run.last.report, run.attempts)
        run.prompt = build_prompt(
            run.intent,
            run.request.question,
            run.request.retrieved_chunks,
            run.request.history[-self._config.memory.prompt_turns :]
            if self._config.memory.prompt_turns > 0
            else [],
            token_budget=self._config.retrieval.token_budget,
            min_test_cases=self._config.validation.min_test_cases,
            improvement=improvement,
        )
        return WorkflowState.GENERATE

    async def _generate(self, run: _Run, index: VectorIndex) -> WorkflowState:
        assert run.prompt is not None
        run.attempts += 1
        try:
            completion = await self._gateway.generate(
                run.prompt.messages(),
                max_tokens=self._config.generation.max_tokens,
                temperature=self._config.generation.temperature,
            )
        except QaragError as exc:
            logger.warning("Generation failed on attempt %d: %s", run.attempts, exc)
            run.error = exc
            return WorkflowState.FAIL
        run.pending = (completion.text, completion.model)
        return WorkflowState.VALIDATE

    async def _validate(self, run: _Run, index: VectorIndex) -> WorkflowState:
        assert run.pending is not None and run.prompt is not None
        text, model = run.pending
        report = self._validator.validate(run.intent, text)
        run.last = _Attempt(text=text, model=model, report=report, prompt=run.prompt)
        if run.best is None or report.score > run.best.report.score:
            run.best = run.last

        if not report.retry_warranted:
            run.best = run.last
            run.outcome = Outcome.COMPLETE
            return WorkflowState.COMPLETE

        if run.attempts > self._config.validation.max_retries:
            logger.warning(
                "Validation retries exhausted for %s; returning best attempt (score %d)",
                run.intent.value,
                run.best.report.score,
            )
            run.outcome = Outcome.DEGRADED
            return WorkflowState.COMPLETE
        return WorkflowState.RETRY

    async def _retry(self, run: _Run, index: VectorIndex) -> WorkflowState:
        assert run.last is not None
        logger.info(
            "Attempt %d scored %d (%s); retrying",
            run.attempts,
            run.last.report.score,
            "; ".join(run.last.report.failed_checks[:3]),
        )
        return WorkflowState.BUILD_PROMPT


def _result(run: _Run) -> WorkflowResult:
    if run.best is None:
        return WorkflowResult(
            answer=run.answer,
            intent=run.intent,
            sources=[],
            quality_score=None,
            attempts=run.attempts,
            outcome=run.outcome,
            trace=run.trace,
        )
    best = run.best
    return WorkflowResult(
        answer=best.text,
        intent=run.intent,
        sources=[_source_ref(h) for h in best.prompt.used_hits],
        quality_score=best.report.score,
        attempts=run.attempts,
        outcome=run.outcome,
        model=best.model,
        failed_checks=best.report.failed_checks,
        trace=run.trace,
    )


def _source_ref(hit: SearchHit) -> SourceRef:
    return SourceRef(
        document_id=hit.chunk.document_id,
        chunk_ordinal=hit.chunk.ordinal,
        similarity=round(hit.similarity, 6),
    )
