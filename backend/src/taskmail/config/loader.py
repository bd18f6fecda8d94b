"""
Configuration loader for taskmail.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from taskmail.common.exceptions import ConfigurationError

from .models import (
    BackfillConfig,
    CacheConfig,
    DatabaseConfig,
    EmbeddingConfig,
    LexicalConfig,
    RetryConfig,
    SearchConfig,
    SystemConfig,
    VectorIndexConfig,
)

load_dotenv()


logger = logging.getLogger(__name__)


class TaskmailConfig(BaseModel):
    """
    Centralized configuration.

    All sub-configs are Pydantic models with validation.
    """

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    vector_index: VectorIndexConfig = Field(default_factory=VectorIndexConfig)
    lexical: LexicalConfig = Field(default_factory=LexicalConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    backfill: BackfillConfig = Field(default_factory=BackfillConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    system: SystemConfig = Field(default_factory=SystemConfig)

    model_config = {"extra": "forbid"}

    @classmethod
    def load(cls, path: Path | None = None) -> TaskmailConfig:
        """
        Load the configuration.

        If path is None, creates config from environment variables.
        If path is provided, loads from JSON file with env defaults for
        anything the file leaves out.
        """
        try:
            if path is None or not path.exists():
                return cls()
            with path.open("r") as f:
                data = json.load(f)
            return cls.model_validate(data)
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Corrupt configuration file at {path}",
                error_code="CONFIG_CORRUPT",
            ) from e
        except ValueError as e:
            raise ConfigurationError(
                f"Configuration error: {e}",
                error_code="CONFIG_INVALID",
            ) from e


_config: TaskmailConfig | None = None
_config_lock = threading.RLock()


def get_config() -> TaskmailConfig:
    """
    Get the global configuration instance (thread-safe singleton pattern).

    Uses double-checked locking so concurrent first calls build one instance.
    """
    global _config

    if _config is not None:
        return _config

    with _config_lock:
        if _config is None:
            _config = TaskmailConfig.load()
            logger.debug(
                "Loaded configuration (provider=%s, canonical_dim=%d)",
                _config.embedding.provider,
                _config.embedding.canonical_dim,
            )
        return _config


def reset_config() -> None:
    """
    Reset the global configuration instance (mainly for testing).
    """
    global _config
    with _config_lock:
        _config = None


def set_config(config: TaskmailConfig) -> None:
    """
    Set the global configuration instance (mainly for testing).
    """
    global _config
    with _config_lock:
        _config = config
