"""
EmbeddingProvider.

Single entry point for turning text into a canonical-width vector. Wraps a
primary and an optional fallback backend and reconciles every result to the
configured dimensionality exactly once.
"""

from __future__ import annotations

import logging
import time

from taskmail.common.exceptions import (
    InvalidInputError,
    ProviderError,
    ProviderUnavailableError,
)
from taskmail.config.loader import TaskmailConfig, get_config
from taskmail.embeddings.dimensions import filler_vector, reconcile_dimensionality
from taskmail.embeddings.providers import (
    EmbeddingBackend,
    HostedEmbeddingBackend,
    LocalEmbeddingBackend,
)
from taskmail.observability import record_metric, trace_operation

logger = logging.getLogger(__name__)


class EmbeddingProvider:
    """
    Produce embeddings of exactly `canonical_dim` components.

    Raises InvalidInputError for empty text and ProviderUnavailableError once
    the primary and the fallback backend have both failed.
    """

    def __init__(
        self,
        primary: EmbeddingBackend,
        fallback: EmbeddingBackend | None = None,
        canonical_dim: int = 768,
        dimension_tolerance: int = 16,
        filler_epsilon: float = 1e-4,
        max_input_chars: int = 12000,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self.canonical_dim = canonical_dim
        self._tolerance = dimension_tolerance
        self._epsilon = filler_epsilon
        self._max_input_chars = max_input_chars

    @classmethod
    def from_config(cls, config: TaskmailConfig | None = None) -> EmbeddingProvider:
        """Build the provider selected by EMBEDDING_PROVIDER, with the other as fallback."""
        config = config or get_config()
        emb = config.embedding
        hosted = HostedEmbeddingBackend(emb, config.retry)
        local = LocalEmbeddingBackend(emb)
        primary, fallback = (
            (hosted, local) if emb.provider == "hosted" else (local, hosted)
        )
        return cls(
            primary=primary,
            fallback=fallback if emb.fallback_enabled else None,
            canonical_dim=emb.canonical_dim,
            dimension_tolerance=emb.dimension_tolerance,
            filler_epsilon=emb.filler_epsilon,
            max_input_chars=emb.max_input_chars,
        )

    def filler(self) -> list[float]:
        """The explicit non-zero fallback vector."""
        return filler_vector(self.canonical_dim, self._epsilon)

    @trace_operation("embed_text")
    async def embed(self, text: str) -> list[float]:
        """Embed one text, falling back to the secondary backend once."""
        if text is None or not text.strip():
            raise InvalidInputError()

        text = text[: self._max_input_chars]
        attempted: list[str] = []
        last_error: ProviderError | None = None

        for backend in (self._primary, self._fallback):
            if backend is None:
                continue
            attempted.append(backend.name)
            started = time.perf_counter()
            try:
                raw = await backend.embed(text)
            except ProviderError as e:
                last_error = e
                record_metric(
                    "embedding_requests_total",
                    1,
                    {"backend": backend.name, "outcome": "error"},
                )
                logger.warning(
                    "Embedding backend %s failed (%s)%s",
                    backend.name,
                    e.error_code or type(e).__name__,
                    "; trying fallback" if backend is self._primary else "",
                )
                continue

            record_metric(
                "embedding_latency_ms",
                (time.perf_counter() - started) * 1000,
                {"backend": backend.name},
                metric_type="histogram",
            )
            record_metric(
                "embedding_requests_total",
                1,
                {"backend": backend.name, "outcome": "ok"},
            )
            return reconcile_dimensionality(
                raw, self.canonical_dim, self._tolerance, self._epsilon
            )

        raise ProviderUnavailableError(
            "All embedding backends failed", attempted=attempted
        ) from last_error

    async def embed_or_filler(self, text: str) -> list[float]:
        """Embed `text`, substituting the filler vector for empty input."""
        try:
            return await self.embed(text)
        except InvalidInputError:
            logger.debug("Empty text; substituting filler embedding")
            return self.filler()

    async def aclose(self) -> None:
        for backend in (self._primary, self._fallback):
            if backend is not None:
                await backend.aclose()
