"""qarag configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site, not in this module)
  2. Environment variables  (QARAG_GENERATION_MODEL, QARAG_EMBEDDING_MODEL)
  3. Per-directory qarag.yaml
  4. Global ~/.qarag/config.yaml  (model defaults only, no API keys)
  5. Hardcoded defaults

The engine itself never reads files or the environment: callers build a
``QaragConfig`` here and pass it in. API keys live in environment variables only.
All YAML reads use yaml.safe_load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from qarag.models import Intent

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".qarag"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "qarag.yaml"

# Key names that look like credentials. Does NOT match max_tokens or token_budget.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    [
        "generation",
        "embedding",
        "retry",
        "chunking",
        "retrieval",
        "memory",
        "validation",
        "engine",
    ]
)

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # local, no key required
    "ollama_chat": None,
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class ProviderCfg:
    """One provider in a fallback chain.

    Attributes:
        name: Display name used in logs and errors.
        models: LiteLLM model strings, tried in order.
        supports_system_prompt: False for back ends without a system role; the
            system prompt is then folded into the first user message.
    """

    name: str
    models: list[str] = field(default_factory=list)
    supports_system_prompt: bool = True


def _default_generation_providers() -> list[ProviderCfg]:
    return [
        ProviderCfg(
            name="gemini",
            models=[
                "gemini/gemini-2.5-flash",
                "gemini/gemini-2.0-flash",
                "gemini/gemini-2.5-pro",
            ],
        ),
        ProviderCfg(name="openai", models=["openai/gpt-4o-mini"]),
    ]


def _default_embedding_providers() -> list[ProviderCfg]:
    return [ProviderCfg(name="openai", models=["openai/text-embedding-3-small"])]


@dataclass
class GenerationCfg:
    """LLM generation configuration (qarag.yaml: generation:)."""

    providers: list[ProviderCfg] = field(default_factory=_default_generation_providers)
    max_tokens: int = 2048
    temperature: float = 0.2


@dataclass
class EmbeddingCfg:
    """Embedding configuration (qarag.yaml: embedding:).

    ``dimensions`` pins the index dimension up front; when None the first
    insert into a project's index fixes it.
    """

    providers: list[ProviderCfg] = field(default_factory=_default_embedding_providers)
    batch_size: int = 64
    dimensions: int | None = None


@dataclass
class RetryCfg:
    """Backoff for transient provider errors, applied per model."""

    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 10.0
    call_timeout: float = 30.0


@dataclass
class ChunkingCfg:
    chunk_size: int = 800
    overlap: int = 100


@dataclass
class RetrievalProfile:
    """Per-intent retrieval settings.

    Attributes:
        k: Maximum chunks to retrieve; 0 disables retrieval.
        min_similarity: Cosine floor; hits below it are dropped.
        requires_context: When True, an empty or irrelevant index short-circuits
            the workflow without calling the LLM.
    """

    k: int = 5
    min_similarity: float = 0.4
    requires_context: bool = True


def _default_profiles() -> dict[Intent, RetrievalProfile]:
    return {
        Intent.TEST_CASE_GENERATION: RetrievalProfile(k=8, min_similarity=0.35),
        Intent.BUG_REPORT_FORMATTING: RetrievalProfile(
            k=3, min_similarity=0.4, requires_context=False
        ),
        Intent.TEST_PLAN_CREATION: RetrievalProfile(k=8, min_similarity=0.35),
        Intent.AUTOMATION_SUGGESTION: RetrievalProfile(k=5, min_similarity=0.4),
        Intent.DOCUMENT_ANALYSIS: RetrievalProfile(k=6, min_similarity=0.4),
        Intent.GENERAL_QA_QUESTION: RetrievalProfile(k=5, min_similarity=0.4),
    }


@dataclass
class RetrievalCfg:
    """Retrieval configuration (qarag.yaml: retrieval:)."""

    token_budget: int = 3_000
    profiles: dict[Intent, RetrievalProfile] = field(default_factory=_default_profiles)

    def profile(self, intent: Intent) -> RetrievalProfile:
        return self.profiles.get(intent, RetrievalProfile())


@dataclass
class MemoryCfg:
    """Conversation memory (qarag.yaml: memory:).

    Attributes:
        max_turns: FIFO capacity per project (user and assistant turns count separately).
        classifier_turns: Turns the intent classifier looks back for follow-ups.
        prompt_turns: Turns rendered into the prompt's conversation block.
    """

    max_turns: int = 10
    classifier_turns: int = 2
    prompt_turns: int = 6


@dataclass
class ValidationCfg:
    quality_threshold: int = 75
    max_retries: int = 2
    min_test_cases: int = 10


@dataclass
class EngineCfg:
    request_timeout: float = 60.0


@dataclass
class QaragConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    generation: GenerationCfg = field(default_factory=GenerationCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    retry: RetryCfg = field(default_factory=RetryCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    memory: MemoryCfg = field(default_factory=MemoryCfg)
    validation: ValidationCfg = field(default_factory=ValidationCfg)
    engine: EngineCfg = field(default_factory=EngineCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)
        elif isinstance(obj, list):
            for i, item in enumerate(obj):
                _scan(item, f"{path}[{i}]")

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}', ignored.",
                UserWarning,
                stacklevel=4,
            )


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _parse_providers(raw: Any, section: str) -> list[ProviderCfg]:
    if not isinstance(raw, list) or not raw:
        raise ConfigError(f"{section}.providers must be a non-empty list.")
    providers: list[ProviderCfg] = []
    for i, p in enumerate(raw):
        models = p.get("models") if isinstance(p, dict) else None
        if not models:
            raise ConfigError(f"{section}.providers[{i}] needs a non-empty 'models' list.")
        providers.append(
            ProviderCfg(
                name=str(p.get("name", f"provider{i}")),
                models=[str(m) for m in models],
                supports_system_prompt=bool(p.get("supports_system_prompt", True)),
            )
        )
    return providers


def _parse_profiles(
    raw: dict[str, Any], defaults: dict[Intent, RetrievalProfile]
) -> dict[Intent, RetrievalProfile]:
    profiles = dict(defaults)
    for name, values in raw.items():
        try:
            intent = Intent(str(name).upper())
        except ValueError:
            raise ConfigError(f"Unknown intent '{name}' in retrieval.profiles.") from None
        base = profiles.get(intent, RetrievalProfile())
        profiles[intent] = RetrievalProfile(
            k=int(values.get("k", base.k)),
            min_similarity=float(values.get("min_similarity", base.min_similarity)),
            requires_context=bool(values.get("requires_context", base.requires_context)),
        )
    return profiles


def _cfg_from_dict(data: dict[str, Any]) -> QaragConfig:
    """Build a *QaragConfig* from a merged raw YAML dict."""
    cfg = QaragConfig()

    if "generation" in data:
        g = data["generation"]
        cfg.generation = GenerationCfg(
            providers=(
                _parse_providers(g["providers"], "generation")
                if "providers" in g
                else cfg.generation.providers
            ),
            max_tokens=int(g.get("max_tokens", cfg.generation.max_tokens)),
            temperature=float(g.get("temperature", cfg.generation.temperature)),
        )

    if "embedding" in data:
        e = data["embedding"]
        dims = e.get("dimensions", cfg.embedding.dimensions)
        cfg.embedding = EmbeddingCfg(
            providers=(
                _parse_providers(e["providers"], "embedding")
                if "providers" in e
                else cfg.embedding.providers
            ),
            batch_size=int(e.get("batch_size", cfg.embedding.batch_size)),
            dimensions=int(dims) if dims is not None else None,
        )

    if "retry" in data:
        r = data["retry"]
        cfg.retry = RetryCfg(
            max_attempts=int(r.get("max_attempts", cfg.retry.max_attempts)),
            backoff_base=float(r.get("backoff_base", cfg.retry.backoff_base)),
            backoff_max=float(r.get("backoff_max", cfg.retry.backoff_max)),
            call_timeout=float(r.get("call_timeout", cfg.retry.call_timeout)),
        )

    if "chunking" in data:
        c = data["chunking"]
        cfg.chunking = ChunkingCfg(
            chunk_size=int(c.get("chunk_size", cfg.chunking.chunk_size)),
            overlap=int(c.get("overlap", cfg.chunking.overlap)),
        )

    if "retrieval" in data:
        rt = data["retrieval"]
        cfg.retrieval = RetrievalCfg(
            token_budget=int(rt.get("token_budget", cfg.retrieval.token_budget)),
            profiles=_parse_profiles(rt.get("profiles") or {}, cfg.retrieval.profiles),
        )

    if "memory" in data:
        m = data["memory"]
        cfg.memory = MemoryCfg(
            max_turns=int(m.get("max_turns", cfg.memory.max_turns)),
            classifier_turns=int(m.get("classifier_turns", cfg.memory.classifier_turns)),
            prompt_turns=int(m.get("prompt_turns", cfg.memory.prompt_turns)),
        )

    if "validation" in data:
        v = data["validation"]
        cfg.validation = ValidationCfg(
            quality_threshold=int(v.get("quality_threshold", cfg.validation.quality_threshold)),
            max_retries=int(v.get("max_retries", cfg.validation.max_retries)),
            min_test_cases=int(v.get("min_test_cases", cfg.validation.min_test_cases)),
        )

    if "engine" in data:
        en = data["engine"]
        cfg.engine = EngineCfg(
            request_timeout=float(en.get("request_timeout", cfg.engine.request_timeout)),
        )

    if cfg.memory.max_turns < 1:
        raise ConfigError("memory.max_turns must be >= 1.")
    if cfg.validation.max_retries < 0:
        raise ConfigError("validation.max_retries must be >= 0.")

    return cfg


def _apply_env_overrides(cfg: QaragConfig) -> QaragConfig:
    """Apply QARAG_* environment variable overrides.

    A single model from the environment replaces the whole chain.
    """
    if model := os.environ.get("QARAG_GENERATION_MODEL"):
        cfg.generation.providers = [ProviderCfg(name=_provider_of(model), models=[model])]
    if model := os.environ.get("QARAG_EMBEDDING_MODEL"):
        cfg.embedding.providers = [ProviderCfg(name=_provider_of(model), models=[model])]
    return cfg


def _provider_of(model: str) -> str:
    return model.split("/")[0].lower() if "/" in model else "openai"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> QaragConfig:
    """Load and return a merged *QaragConfig*.

    Applies layers in order: global → per-directory → env vars.

    Args:
        project_dir: Directory to search for *qarag.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If a config file contains API-key-like fields or
            malformed provider/profile entries.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_project, project_cfg_path)
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)
    return _apply_env_overrides(cfg)


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = _provider_of(model)
    env_var = _PROVIDER_ENV.get(provider, f"{provider.upper()}_API_KEY")

    if env_var is None:
        return

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


def usable_providers(providers: list[ProviderCfg]) -> list[ProviderCfg]:
    """Return the providers whose API key is present in the environment."""
    usable: list[ProviderCfg] = []
    for p in providers:
        try:
            validate_api_key(p.models[0])
        except EnvironmentError:
            continue
        usable.append(p)
    return usable
