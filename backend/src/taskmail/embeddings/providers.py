"""
Embedding backends.

Two interchangeable backends produce raw vectors for a single text:

- HostedEmbeddingBackend: OpenAI embeddings API (or any OpenAI-compatible
  server) through the official async client.
- LocalEmbeddingBackend: self-hosted Ollama-style server, `POST /api/embeddings`
  with `{"model", "prompt"}` returning `{"embedding": [...]}`.

Backends return whatever length the model produces. Dimension reconciliation
is the caller's job (see taskmail.embeddings.client).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx
import openai
from openai import AsyncOpenAI
from taskmail.common.exceptions import ProviderError, RateLimitError
from taskmail.config.models import EmbeddingConfig, RetryConfig
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

_TRANSIENT_OPENAI_ERRORS = (
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


class EmbeddingBackend(ABC):
    """A single source of raw embedding vectors."""

    name: str = "backend"

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Return the model's vector for `text` or raise ProviderError."""

    async def aclose(self) -> None:  # noqa: B027
        """Release network resources."""


class HostedEmbeddingBackend(EmbeddingBackend):
    """
    OpenAI-compatible hosted embeddings.

    Transient failures (rate limit, connection, 5xx) are retried with
    exponential backoff before a ProviderError is raised.
    """

    name = "hosted"

    def __init__(
        self,
        config: EmbeddingConfig,
        retry_config: RetryConfig | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = config.hosted_model
        self._retry = retry_config or RetryConfig()
        self._client = client
        if self._client is None and config.api_key:
            self._client = AsyncOpenAI(
                api_key=config.api_key,
                base_url=config.hosted_base_url,
                timeout=config.request_timeout_seconds,
                max_retries=0,
            )
        logger.info("HostedEmbeddingBackend initialized (model: %s)", self._model)

    async def embed(self, text: str) -> list[float]:
        if self._client is None:
            raise ProviderError(
                "Hosted embedding provider is not configured (missing API key)",
                provider=self.name,
                error_code="PROVIDER_NOT_CONFIGURED",
            )
        client = self._client

        @retry(
            retry=retry_if_exception_type(_TRANSIENT_OPENAI_ERRORS),
            wait=wait_exponential(
                multiplier=self._retry.initial_backoff_seconds,
                max=self._retry.max_backoff_seconds,
            ),
            stop=stop_after_attempt(self._retry.max_retries + 1),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def _attempt():
            return await client.embeddings.create(
                input=text, model=self._model, encoding_format="float"
            )

        try:
            resp = await _attempt()
        except openai.RateLimitError as e:
            raise RateLimitError(
                "Hosted embedding rate limit exceeded", provider=self.name
            ) from e
        except openai.OpenAIError as e:
            # Exception type only; messages can echo request content.
            raise ProviderError(
                f"Hosted embedding request failed: {type(e).__name__}",
                provider=self.name,
                retryable=isinstance(e, _TRANSIENT_OPENAI_ERRORS),
            ) from e

        if not resp.data:
            raise ProviderError("Hosted embedding response was empty", provider=self.name)
        return list(resp.data[0].embedding)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


class LocalEmbeddingBackend(EmbeddingBackend):
    """
    Self-hosted embedding server (Ollama API).
    """

    name = "local"

    def __init__(
        self,
        config: EmbeddingConfig,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoint = config.local_base_url.rstrip("/")
        self._model = config.local_model
        self.client = client or httpx.AsyncClient(
            timeout=config.request_timeout_seconds
        )
        logger.info(
            "LocalEmbeddingBackend initialized (endpoint: %s, model: %s)",
            self._endpoint,
            self._model,
        )

    async def embed(self, text: str) -> list[float]:
        url = f"{self._endpoint}/api/embeddings"
        try:
            resp = await self.client.post(
                url,
                json={"model": self._model, "prompt": text},
                headers={"Content-Type": "application/json"},
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Local embedding request failed with status %s",
                e.response.status_code,
            )
            raise ProviderError(
                f"Local embedding server returned {e.response.status_code}",
                provider=self.name,
                retryable=e.response.status_code >= 500,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Local embedding request failed: %s", type(e).__name__)
            raise ProviderError(
                f"Local embedding request failed: {type(e).__name__}",
                provider=self.name,
                retryable=True,
            ) from e

        embedding = data.get("embedding") if isinstance(data, dict) else None
        if not isinstance(embedding, list) or not embedding:
            raise ProviderError(
                "Local embedding response had no embedding", provider=self.name
            )
        try:
            return [float(v) for v in embedding]
        except (TypeError, ValueError) as e:
            raise ProviderError(
                "Local embedding response was not numeric", provider=self.name
            ) from e

    async def is_available(self) -> bool:
        """Check if the embedding server answers."""
        try:
            resp = await self.client.get(f"{self._endpoint}/api/tags", timeout=5.0)
            return resp.status_code == 200
        except httpx.HTTPError:
            return False

    async def aclose(self) -> None:
        await self.client.aclose()
