"""Provider gateway: LiteLLM calls behind an ordered model fallback chain.

Every generation and embedding call routes through this module. Each
configured provider contributes its models to one chain, tried in order.

Error handling per model:
  model unavailable (404 / "model not found")  → next model immediately
  transient (rate limit, timeout, 5xx, network) → capped exponential backoff
                                                  on the same model, then next
  fatal (auth, permission, bad request)         → ProviderFatalError, no fallback

Exhausting the chain raises ProviderUnavailable listing every model tried.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

import litellm
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from qarag.config import ProviderCfg, QaragConfig, RetryCfg
from qarag.errors import ProviderFatalError, ProviderUnavailable

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True

logger = logging.getLogger(__name__)

T = TypeVar("T")

_UNAVAILABLE = "unavailable"
_RETRYABLE = "retryable"
_FATAL = "fatal"

_MODEL_MISSING_HINTS = ("model not found", "does not exist", "is not found", "not supported")


class InvalidProviderResponse(Exception):
    """Provider answered, but with no usable content."""


@dataclass(frozen=True)
class Completion:
    text: str
    model: str
    attempts: int


class Gateway(Protocol):
    """What the orchestrator and embedder need from a provider back end."""

    async def generate(
        self, messages: list[dict], *, max_tokens: int, temperature: float
    ) -> Completion: ...

    async def embed(self, texts: list[str]) -> list[list[float]]: ...


# ------------------------------------------------------------------
# Error classification
# ------------------------------------------------------------------


def classify_error(exc: BaseException) -> str | None:
    """Map a provider exception to unavailable / retryable / fatal.

    Returns None for exceptions that are not provider errors; those propagate.
    """
    if isinstance(exc, litellm.NotFoundError):
        return _UNAVAILABLE
    if isinstance(exc, (litellm.AuthenticationError, litellm.PermissionDeniedError)):
        return _FATAL
    if isinstance(
        exc,
        (
            litellm.RateLimitError,
            litellm.Timeout,
            litellm.APIConnectionError,
            litellm.InternalServerError,
            litellm.ServiceUnavailableError,
            InvalidProviderResponse,
        ),
    ):
        return _RETRYABLE
    if isinstance(exc, litellm.BadRequestError):
        return _UNAVAILABLE if _mentions_missing_model(exc) else _FATAL
    if isinstance(exc, litellm.APIError):
        status = getattr(exc, "status_code", None) or 500
        if status == 404:
            return _UNAVAILABLE
        return _RETRYABLE if status >= 500 else _FATAL
    return None


def _mentions_missing_model(exc: BaseException) -> bool:
    text = str(exc).lower()
    return any(hint in text for hint in _MODEL_MISSING_HINTS)


def _is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) == _RETRYABLE


# ------------------------------------------------------------------
# Gateway
# ------------------------------------------------------------------


class ProviderGateway:
    """LiteLLM-backed implementation of the Gateway protocol."""

    def __init__(
        self,
        generation: list[ProviderCfg],
        embedding: list[ProviderCfg],
        retry: RetryCfg | None = None,
    ) -> None:
        if not generation or not embedding:
            raise ValueError("ProviderGateway needs at least one generation and one embedding provider")
        self._generation = generation
        self._embedding = embedding
        self._retry = retry or RetryCfg()

    @classmethod
    def from_config(cls, cfg: QaragConfig) -> ProviderGateway:
        return cls(cfg.generation.providers, cfg.embedding.providers, cfg.retry)

    async def generate(
        self,
        messages: list[dict],
        *,
        max_tokens: int = 2048,
        temperature: float = 0.2,
    ) -> Completion:
        """Generate a chat completion, falling back along the provider chain.

        Raises:
            ProviderFatalError: On authentication or malformed-request errors.
            ProviderUnavailable: When every model in the chain failed.
        """

        def make_call(provider: ProviderCfg, model: str) -> Callable[[], Awaitable[str]]:
            prepared = prepare_messages(messages, provider.supports_system_prompt)

            async def call() -> str:
                response = await litellm.acompletion(
                    model=model,
                    messages=prepared,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    timeout=self._retry.call_timeout,
                )
                return _completion_text(response)

            return call

        text, model, attempts = await self._run_chain(self._generation, make_call, "generation")
        return Completion(text=text, model=model, attempts=attempts)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts* in one provider call, falling back along the chain."""
        if not texts:
            return []

        def make_call(provider: ProviderCfg, model: str) -> Callable[[], Awaitable[list[list[float]]]]:
            async def call() -> list[list[float]]:
                response = await litellm.aembedding(
                    model=model,
                    input=list(texts),
                    timeout=self._retry.call_timeout,
                )
                return _embedding_vectors(response, len(texts))

            return call

        vectors, _, _ = await self._run_chain(self._embedding, make_call, "embedding")
        return vectors

    # ------------------------------------------------------------------
    # Chain execution
    # ------------------------------------------------------------------

    async def _run_chain(
        self,
        providers: list[ProviderCfg],
        make_call: Callable[[ProviderCfg, str], Callable[[], Awaitable[T]]],
        purpose: str,
    ) -> tuple[T, str, int]:
        tried: list[tuple[str, str]] = []
        total_calls = 0

        for provider in providers:
            for model in provider.models:
                call = make_call(provider, model)
                calls = 0
                try:
                    async for attempt in AsyncRetrying(
                        stop=stop_after_attempt(max(1, self._retry.max_attempts)),
                        wait=wait_exponential(
                            multiplier=self._retry.backoff_base, max=self._retry.backoff_max
                        ),
                        retry=retry_if_exception(_is_retryable),
                        before_sleep=lambda state: logger.warning(
                            "%s call to %s failed (attempt %d): %s; backing off",
                            purpose,
                            model,
                            state.attempt_number,
                            state.outcome.exception() if state.outcome else "",
                        ),
                        reraise=True,
                    ):
                        with attempt:
                            calls += 1
                            result = await call()
                except Exception as exc:
                    total_calls += calls
                    kind = classify_error(exc)
                    if kind is None:
                        raise
                    if kind == _FATAL:
                        raise ProviderFatalError(
                            f"{provider.name} rejected the {purpose} request to {model}: {exc}",
                            model=model,
                            provider=provider.name,
                        ) from exc
                    logger.warning(
                        "%s model %s unavailable (%s), trying next in chain", purpose, model, kind
                    )
                    tried.append((model, f"{type(exc).__name__}: {exc}"))
                    continue

                total_calls += calls
                if tried:
                    logger.info("%s served by fallback model %s", purpose, model)
                return result, model, total_calls

        raise ProviderUnavailable(
            f"All {purpose} providers failed ({len(tried)} models tried).", tried=tried
        )


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def prepare_messages(messages: list[dict], supports_system_prompt: bool) -> list[dict]:
    """Fold system messages into the first user message for back ends without
    a system role. Returns a new list; *messages* is not modified."""
    if supports_system_prompt:
        return [dict(m) for m in messages]

    system_parts = [str(m["content"]) for m in messages if m.get("role") == "system"]
    rest = [dict(m) for m in messages if m.get("role") != "system"]
    if not system_parts:
        return rest

    preamble = "\n\n".join(system_parts)
    for m in rest:
        if m.get("role") == "user":
            m["content"] = f"{preamble}\n\n{m['content']}"
            return rest
    return [{"role": "user", "content": preamble}, *rest]


def _completion_text(response: Any) -> str:
    try:
        text = response.choices[0].message.content
    except (AttributeError, IndexError, KeyError, TypeError) as exc:
        raise InvalidProviderResponse(f"malformed completion response: {exc}") from exc
    if not text or not str(text).strip():
        raise InvalidProviderResponse("empty completion response")
    return str(text)


def _embedding_vectors(response: Any, expected: int) -> list[list[float]]:
    try:
        data = response.data
        vectors = [list(map(float, item["embedding"])) for item in data]
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise InvalidProviderResponse(f"malformed embedding response: {exc}") from exc
    if len(vectors) != expected:
        raise InvalidProviderResponse(
            f"embedding response has {len(vectors)} vectors for {expected} inputs"
        )
    return vectors
