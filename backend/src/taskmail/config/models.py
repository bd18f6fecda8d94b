"""
Configuration Models.

All configuration sections are Pydantic models; defaults are read from the
environment so a deployment is configured without code changes.
"""

from __future__ import annotations

import os
import re
from typing import Any, Literal

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)

# -----------------------------------------------------------------------------
# Environment Variable Helper
# -----------------------------------------------------------------------------

ENV_PREFIX = "TASKMAIL_"

_FTS_CONFIG_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?")


def _env(key: str, default: Any, value_type: type = str) -> Any:
    """
    Get environment variable with TASKMAIL_ prefix fallback.

    Args:
        key: Environment variable name (without prefix)
        default: Default value if not set
        value_type: Type to convert value to

    Returns:
        Environment variable value or default
    """
    env_key_prefixed = f"{ENV_PREFIX}{key}"

    value = os.getenv(env_key_prefixed)
    source_key = env_key_prefixed if value is not None else None
    if value is None:
        value = os.getenv(key)
        if value is not None:
            source_key = key

    if value is None:
        return default
    try:
        if value_type is bool:
            normalized = str(value).strip().lower()
            if normalized in ("true", "1", "yes", "on"):
                return True
            if normalized in ("false", "0", "no", "off"):
                return False
            raise ValueError("Invalid boolean value")
        if value_type is int:
            return int(value)
        if value_type is float:
            return float(value)
        return value
    except (ValueError, TypeError) as exc:
        key_name = source_key or key
        raise ValueError(
            f"Invalid value for {key_name}; expected {value_type.__name__}."
        ) from exc


def _unwrap_secret(value: SecretStr | str | None) -> str | None:
    if isinstance(value, SecretStr):
        return value.get_secret_value()
    return value


# -----------------------------------------------------------------------------
# Database Configuration
# -----------------------------------------------------------------------------


class DatabaseConfig(BaseModel):
    """Database connection configuration."""

    url: str | None = Field(
        default_factory=lambda: _env("DB_URL", None) or _env("DATABASE_URL", None),
        description="Postgres connection URL (TASKMAIL_DB_URL or DATABASE_URL)",
    )
    pool_size: int = Field(
        default_factory=lambda: _env("DB_POOL_SIZE", 10, int),
        ge=1,
        le=100,
        description="Connection pool size",
    )
    max_overflow: int = Field(
        default_factory=lambda: _env("DB_MAX_OVERFLOW", 5, int),
        ge=0,
        le=50,
        description="Maximum pool overflow",
    )
    slow_query_seconds: float = Field(
        default_factory=lambda: _env("DB_SLOW_QUERY_SECONDS", 1.0, float),
        gt=0.0,
        description="Statements slower than this are logged",
    )

    model_config = {"extra": "forbid", "validate_default": True}


# -----------------------------------------------------------------------------
# Embedding Configuration
# -----------------------------------------------------------------------------

_PROVIDER_ALIASES = {"openai": "hosted", "ollama": "local"}


class EmbeddingConfig(BaseModel):
    """Embedding provider configuration."""

    provider: Literal["hosted", "local"] = Field(
        default_factory=lambda: _env("EMBEDDING_PROVIDER", "hosted"),
        description="Primary backend: 'hosted' (OpenAI API) or 'local' (Ollama)",
    )
    canonical_dim: int = Field(
        default_factory=lambda: _env("CANONICAL_DIM", 768, int),
        ge=64,
        le=4096,
        description="Dimension of every stored embedding (must match the DB vector column)",
    )
    fallback_enabled: bool = Field(
        default_factory=lambda: _env("EMBEDDING_FALLBACK_ENABLED", True, bool),
        description="Retry once against the other backend when the primary fails",
    )

    hosted_model: str = Field(
        default_factory=lambda: _env("OPENAI_EMBED_MODEL", "text-embedding-3-small"),
        description="Hosted embedding model name",
    )
    hosted_base_url: str | None = Field(
        default_factory=lambda: _env("OPENAI_BASE_URL", None),
        description="Override for OpenAI-compatible endpoints",
    )
    hosted_api_key: SecretStr | None = Field(
        default_factory=lambda: _env("OPENAI_API_KEY", None),
        description="API key for the hosted provider",
    )

    local_base_url: str = Field(
        default_factory=lambda: _env("OLLAMA_BASE_URL", "http://localhost:11434"),
        description="Base URL of the self-hosted embedding server",
    )
    local_model: str = Field(
        default_factory=lambda: _env("OLLAMA_EMBED_MODEL", "nomic-embed-text"),
        description="Self-hosted embedding model name",
    )

    dimension_tolerance: int = Field(
        default_factory=lambda: _env("EMBED_DIM_TOLERANCE", 16, int),
        ge=0,
        le=256,
        description="Band around canonical_dim that is padded or truncated",
    )
    filler_epsilon: float = Field(
        default=1e-4,
        gt=0.0,
        le=0.01,
        description="Non-zero value used for padding and filler vectors",
    )
    max_input_chars: int = Field(
        default_factory=lambda: _env("EMBED_MAX_INPUT_CHARS", 12000, int),
        ge=256,
        le=100000,
        description="Hard cap on characters sent to a provider",
    )
    request_timeout_seconds: float = Field(
        default_factory=lambda: _env("EMBED_TIMEOUT_SECONDS", 30.0, float),
        gt=0.0,
        le=300.0,
        description="HTTP timeout per provider request",
    )

    @field_validator("provider", mode="before")
    def normalize_provider(cls, value: str) -> str:
        normalized = str(value).strip().lower()
        return _PROVIDER_ALIASES.get(normalized, normalized)

    @property
    def api_key(self) -> str | None:
        return _unwrap_secret(self.hosted_api_key)

    model_config = {"extra": "forbid", "validate_default": True}


# -----------------------------------------------------------------------------
# Index Configuration
# -----------------------------------------------------------------------------


class VectorIndexConfig(BaseModel):
    """ANN index construction and query parameters."""

    metric: Literal["cosine", "l2"] = Field(
        default_factory=lambda: _env("VECTOR_METRIC", "cosine"),
        description="Distance metric used for queries and index opclass",
    )
    hnsw_m: int = Field(
        default_factory=lambda: _env("HNSW_M", 16, int),
        ge=2,
        le=100,
        description="HNSW graph degree",
    )
    hnsw_ef_construction: int = Field(
        default_factory=lambda: _env("HNSW_EF_CONSTRUCTION", 64, int),
        ge=4,
        le=1000,
        description="HNSW construction effort",
    )
    ef_search: int = Field(
        default_factory=lambda: _env("HNSW_EF_SEARCH", 40, int),
        ge=1,
        le=1000,
        description="HNSW query-time candidate list size",
    )
    ivfflat_lists: int = Field(
        default_factory=lambda: _env("IVFFLAT_LISTS", 100, int),
        ge=1,
        le=10000,
        description="IVFFlat list count used when HNSW cannot be built",
    )

    model_config = {"extra": "forbid", "validate_default": True}


class LexicalConfig(BaseModel):
    """Full-text and trigram fallback configuration."""

    fts_config: str = Field(
        default_factory=lambda: _env("FTS_CONFIG", "english"),
        description="Postgres text search configuration",
    )
    trigram_threshold: float = Field(
        default_factory=lambda: _env("TRIGRAM_THRESHOLD", 0.3, float),
        ge=0.0,
        le=1.0,
        description="Minimum word similarity for fuzzy matches",
    )
    min_hits_before_fuzzy: int = Field(
        default_factory=lambda: _env("MIN_HITS_BEFORE_FUZZY", 5, int),
        ge=0,
        le=1000,
        description="Run the trigram fallback when full-text returns fewer hits",
    )
    short_token_length: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Tokens this short always trigger the trigram fallback",
    )
    fuzzy_weight: float = Field(
        default_factory=lambda: _env("FUZZY_WEIGHT", 0.5, float),
        gt=0.0,
        le=0.5,
        description="Scale applied to trigram similarity (keeps fuzzy below full-text hits)",
    )

    @field_validator("fts_config")
    def validate_fts_config(cls, value: str) -> str:
        # Interpolated into trigger and index DDL by the migrations.
        if not _FTS_CONFIG_NAME.fullmatch(value):
            raise ValueError(f"Invalid text search configuration name: {value!r}")
        return value

    model_config = {"extra": "forbid", "validate_default": True}


# -----------------------------------------------------------------------------
# Search Configuration
# -----------------------------------------------------------------------------


class SearchConfig(BaseModel):
    """
    Hybrid search configuration.

    Controls fusion weights, candidate pool size and the semantic deadline.
    """

    default_limit: int = Field(
        default_factory=lambda: _env("SEARCH_LIMIT", 20, int),
        ge=1,
        le=500,
        description="Results returned when the caller does not set a limit",
    )
    lexical_weight: float = Field(
        default_factory=lambda: _env("LEXICAL_WEIGHT", 0.7, float),
        ge=0.0,
        le=1.0,
        description="Weight of the lexical score in hybrid fusion",
    )
    semantic_weight: float = Field(
        default_factory=lambda: _env("SEMANTIC_WEIGHT", 0.3, float),
        ge=0.0,
        le=1.0,
        description="Weight of the semantic score in hybrid fusion",
    )
    deadline_seconds: float = Field(
        default_factory=lambda: _env("SEARCH_DEADLINE_SECONDS", 5.0, float),
        gt=0.0,
        le=60.0,
        description="Semantic sub-search is dropped after this long",
    )
    request_timeout_seconds: float = Field(
        default_factory=lambda: _env("SEARCH_TIMEOUT_SECONDS", 30.0, float),
        gt=0.0,
        le=300.0,
        description="Whole-request bound; a search still running after this fails",
    )
    candidates_multiplier: int = Field(
        default_factory=lambda: _env("CANDIDATES_MULTIPLIER", 2, int),
        ge=1,
        le=10,
        description="Per-source candidate pool = limit * multiplier",
    )
    min_similarity: float = Field(
        default_factory=lambda: _env("MIN_SIMILARITY", 0.0, float),
        ge=0.0,
        le=1.0,
        description="Semantic hits below this similarity are discarded",
    )

    @model_validator(mode="after")
    def validate_weights(self) -> SearchConfig:
        if self.lexical_weight <= self.semantic_weight:
            raise ValueError("lexical_weight must be greater than semantic_weight")
        return self

    @model_validator(mode="after")
    def validate_timeouts(self) -> SearchConfig:
        if self.deadline_seconds > self.request_timeout_seconds:
            raise ValueError("deadline_seconds must not exceed request_timeout_seconds")
        return self

    model_config = {"extra": "forbid", "validate_default": True}


class BackfillConfig(BaseModel):
    """Batch embedding backfill configuration."""

    batch_size: int = Field(
        default_factory=lambda: _env("BACKFILL_BATCH_SIZE", 50, int),
        ge=1,
        le=1000,
        description="Entities selected per run",
    )
    item_timeout_seconds: float = Field(
        default_factory=lambda: _env("BACKFILL_ITEM_TIMEOUT", 30.0, float),
        gt=0.0,
        le=600.0,
        description="Per-item embedding timeout",
    )
    min_text_length: int = Field(
        default_factory=lambda: _env("BACKFILL_MIN_TEXT_LENGTH", 10, int),
        ge=0,
        le=1000,
        description="Prepared text shorter than this is skipped",
    )
    max_text_chars: int = Field(
        default_factory=lambda: _env("BACKFILL_MAX_TEXT_CHARS", 10000, int),
        ge=100,
        le=100000,
        description="Character budget for prepared entity text",
    )

    model_config = {"extra": "forbid", "validate_default": True}


class CacheConfig(BaseModel):
    """Query embedding cache configuration."""

    ttl_seconds: float = Field(
        default_factory=lambda: _env("QUERY_CACHE_TTL", 300.0, float),
        ge=0.0,
        le=86400.0,
        description="Entries older than this are refreshed",
    )
    max_size: int = Field(
        default_factory=lambda: _env("QUERY_CACHE_SIZE", 100, int),
        ge=0,
        le=100000,
        description="Least recently used entries are evicted past this size",
    )

    model_config = {"extra": "forbid", "validate_default": True}


class RetryConfig(BaseModel):
    """
    Retry configuration for provider calls.
    """

    max_retries: int = Field(
        default_factory=lambda: _env("API_MAX_RETRIES", 3, int),
        ge=0,
        le=10,
        description="Maximum retry attempts",
    )
    initial_backoff_seconds: float = Field(
        default_factory=lambda: _env("API_BACKOFF_INITIAL", 1.0, float),
        ge=0.0,
        le=30.0,
        description="Initial backoff delay",
    )
    max_backoff_seconds: float = Field(
        default_factory=lambda: _env("API_BACKOFF_MAX", 10.0, float),
        ge=0.0,
        le=120.0,
        description="Backoff ceiling",
    )

    model_config = {"extra": "forbid", "validate_default": True}


class SystemConfig(BaseModel):
    """System-level configuration."""

    env: Literal["dev", "staging", "prod"] = Field(
        default_factory=lambda: _env("ENV", "dev"),
        description="Environment name",
    )
    log_level: str = Field(
        default_factory=lambda: _env("LOG_LEVEL", "INFO"), description="Logging level"
    )

    @field_validator("env", mode="before")
    def normalize_env(cls, value: str) -> str:
        normalized = str(value).strip().lower()
        if normalized == "production":
            return "prod"
        return normalized

    model_config = {"extra": "forbid", "validate_default": True}
