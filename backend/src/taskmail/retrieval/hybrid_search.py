"""
Hybrid search engine.

Pipeline per request:
  1. Build the lexical and embedding query forms
  2. Lexical and semantic sub-searches, concurrently, for each entity type
  3. Normalize both signals into [0, 1]
  4. Weighted-sum fusion (lexical weighted higher)
  5. Total ordering and truncation

The semantic side is optional: provider failures and the search deadline
degrade the request to lexical-only. Database failures fail the request.
"""

from __future__ import annotations

import asyncio
import logging
import time

from taskmail.common.exceptions import (
    EmbeddingError,
    EmptyQueryError,
    ProviderError,
    RetrievalError,
    TaskmailError,
)
from taskmail.common.types import Err, Ok, Result
from taskmail.config.loader import TaskmailConfig, get_config
from taskmail.config.models import LexicalConfig, SearchConfig
from taskmail.db.models import EntityType
from taskmail.db.session import SessionFactory
from taskmail.embeddings.client import EmbeddingProvider
from taskmail.observability import record_metric, trace_operation
from taskmail.retrieval.cache import (
    EmbeddingCache,
    NullEmbeddingCache,
    TTLEmbeddingCache,
)
from taskmail.retrieval.fusion import (
    ResultKey,
    collect_best,
    fuse_weighted_sum,
    normalize_lexical,
    rank_results,
)
from taskmail.retrieval.lexical_index import (
    LexicalIndexStore,
    PostgresLexicalIndexStore,
)
from taskmail.retrieval.query_builder import FuzzyQueryBuilder, LexicalQuery
from taskmail.retrieval.results import (
    ALL_ENTITY_TYPES,
    SearchOptions,
    SearchResults,
)
from taskmail.retrieval.vector_index import PgvectorIndexStore, VectorIndexStore

logger = logging.getLogger(__name__)


class SemanticUnavailable(Exception):
    """Internal signal: the semantic side could not run for this request."""


class HybridSearchEngine:
    """
    Fuse lexical and semantic search over emails and tasks for one owner.

    Holds no per-request state; concurrent searches share only the query
    embedding cache, which is thread-safe.
    """

    def __init__(
        self,
        lexical_store: LexicalIndexStore,
        vector_store: VectorIndexStore,
        embedder: EmbeddingProvider,
        query_builder: FuzzyQueryBuilder | None = None,
        cache: EmbeddingCache | None = None,
        search_config: SearchConfig | None = None,
        lexical_config: LexicalConfig | None = None,
        cache_namespace: str = "",
    ) -> None:
        self._lexical = lexical_store
        self._vector = vector_store
        self._embedder = embedder
        self._builder = query_builder or FuzzyQueryBuilder()
        self._cache = cache or NullEmbeddingCache()
        self._config = search_config or SearchConfig()
        self._fuzzy_weight = (lexical_config or LexicalConfig()).fuzzy_weight
        self._cache_namespace = cache_namespace

    @classmethod
    def from_config(
        cls,
        config: TaskmailConfig | None = None,
        session_factory: SessionFactory | None = None,
        embedder: EmbeddingProvider | None = None,
    ) -> HybridSearchEngine:
        """Wire the Postgres stores, the configured provider and a TTL cache."""
        config = config or get_config()
        return cls(
            lexical_store=PostgresLexicalIndexStore(session_factory, config.lexical),
            vector_store=PgvectorIndexStore(
                session_factory,
                canonical_dim=config.embedding.canonical_dim,
                config=config.vector_index,
            ),
            embedder=embedder or EmbeddingProvider.from_config(config),
            cache=TTLEmbeddingCache.from_config(config.cache),
            search_config=config.search,
            lexical_config=config.lexical,
            cache_namespace=(
                f"{config.embedding.provider}:{config.embedding.canonical_dim}"
            ),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @trace_operation("hybrid_search")
    async def search(
        self,
        owner_id: str,
        raw_query: str | None,
        options: SearchOptions | None = None,
    ) -> Result[SearchResults, RetrievalError]:
        """
        Run one hybrid search.

        Returns Ok with an empty list for empty queries (no store calls) and
        Err(RetrievalError) when a backing store is unreachable.
        """
        options = options or SearchOptions()
        query_label = raw_query or ""
        try:
            built = self._builder.build(raw_query)
        except EmptyQueryError:
            return Ok(SearchResults(query=query_label))

        wants_any = options.use_lexical or options.use_semantic
        if not wants_any or not options.entity_types:
            return Ok(SearchResults(query=query_label))

        started = time.perf_counter()
        limit = options.limit or self._config.default_limit
        candidates = limit * self._config.candidates_multiplier

        lexical_coro = (
            self._lexical_scores(
                owner_id, built.lexical, options.entity_types, candidates
            )
            if options.use_lexical
            else _empty_scores()
        )
        semantic_coro = (
            self._semantic_scores(
                owner_id, built.embedding_input, options.entity_types, candidates
            )
            if options.use_semantic
            else _empty_scores()
        )
        timeout = self._config.request_timeout_seconds
        try:
            lexical_outcome, semantic_outcome = await asyncio.wait_for(
                asyncio.gather(lexical_coro, semantic_coro, return_exceptions=True),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            record_metric("search_requests_total", 1, {"outcome": "timeout"})
            logger.error("Hybrid search exceeded %.1fs request timeout", timeout)
            return Err(
                RetrievalError(
                    "Search timed out",
                    query=query_label,
                    error_code="SEARCH_TIMEOUT",
                    context={"timeout_seconds": timeout},
                )
            )

        for outcome in (lexical_outcome, semantic_outcome):
            if isinstance(outcome, BaseException) and not isinstance(
                outcome, SemanticUnavailable
            ):
                return self._store_failure(outcome, query_label)

        degraded = isinstance(semantic_outcome, SemanticUnavailable)
        lexical_scores = lexical_outcome
        semantic_scores = {} if degraded else semantic_outcome

        fused = fuse_weighted_sum(
            lexical_scores,
            semantic_scores,
            lexical_weight=self._config.lexical_weight,
            semantic_weight=self._config.semantic_weight,
        )
        results = rank_results(fused, limit)

        elapsed_ms = (time.perf_counter() - started) * 1000
        record_metric("search_latency_ms", elapsed_ms, metric_type="histogram")
        record_metric(
            "search_requests_total",
            1,
            {"outcome": "ok", "degraded": degraded},
        )
        logger.info(
            "Hybrid search: %d lexical, %d semantic, %d returned (%.0fms%s)",
            len(lexical_scores),
            len(semantic_scores),
            len(results),
            elapsed_ms,
            ", degraded" if degraded else "",
        )
        return Ok(SearchResults(query=query_label, results=results, degraded=degraded))

    @trace_operation("find_similar")
    async def find_similar(
        self,
        owner_id: str,
        entity_type: EntityType,
        entity_id: int,
        limit: int | None = None,
        entity_types: tuple[EntityType, ...] = ALL_ENTITY_TYPES,
    ) -> Result[SearchResults, RetrievalError]:
        """
        Entities of the same owner closest to the stored embedding of one entity.

        An entity without an embedding has no neighbours (empty Ok).
        """
        entity_type = EntityType(entity_type)
        query_label = f"similar:{entity_type.value}:{entity_id}"
        limit = limit or self._config.default_limit
        try:
            vector = await asyncio.to_thread(
                self._vector.get_embedding, entity_type, entity_id, owner_id
            )
            if vector is None:
                return Ok(SearchResults(query=query_label))
            scores = await self._vector_scores(
                owner_id,
                vector,
                entity_types,
                limit,
                exclude=(entity_id, entity_type),
            )
        except TaskmailError as e:
            return self._store_failure(e, query_label)

        fused = fuse_weighted_sum({}, scores)
        return Ok(SearchResults(query=query_label, results=rank_results(fused, limit)))

    # ------------------------------------------------------------------
    # Sub-searches
    # ------------------------------------------------------------------

    async def _lexical_scores(
        self,
        owner_id: str,
        query: LexicalQuery,
        entity_types: tuple[EntityType, ...],
        limit: int,
    ) -> dict[ResultKey, float]:
        per_type = await asyncio.gather(
            *(
                asyncio.to_thread(self._lexical.search, et, owner_id, query, limit)
                for et in entity_types
            )
        )
        return collect_best(
            ((hit.entity_id, et), normalize_lexical(hit, self._fuzzy_weight))
            for et, hits in zip(entity_types, per_type)
            for hit in hits
        )

    async def _semantic_scores(
        self,
        owner_id: str,
        embedding_input: str,
        entity_types: tuple[EntityType, ...],
        limit: int,
    ) -> dict[ResultKey, float]:
        """
        Embed the query and run the vector queries under the search deadline.

        Raises:
            SemanticUnavailable: provider failure or deadline exceeded
            RetrievalError: vector store failure
        """
        try:
            return await asyncio.wait_for(
                self._semantic_pipeline(owner_id, embedding_input, entity_types, limit),
                timeout=self._config.deadline_seconds,
            )
        except (ProviderError, EmbeddingError) as e:
            record_metric("search_degraded_total", 1, {"reason": "provider"})
            logger.warning(
                "Query embedding failed (%s); falling back to lexical only",
                e.error_code or type(e).__name__,
            )
            raise SemanticUnavailable() from e
        except asyncio.TimeoutError as e:
            record_metric("search_degraded_total", 1, {"reason": "deadline"})
            logger.warning(
                "Semantic search exceeded %.1fs deadline; falling back to lexical only",
                self._config.deadline_seconds,
            )
            raise SemanticUnavailable() from e

    async def _semantic_pipeline(
        self,
        owner_id: str,
        embedding_input: str,
        entity_types: tuple[EntityType, ...],
        limit: int,
    ) -> dict[ResultKey, float]:
        vector = await self._query_embedding(embedding_input)
        return await self._vector_scores(owner_id, vector, entity_types, limit)

    async def _query_embedding(self, text: str) -> list[float]:
        """Query embedding with cache fallback."""
        cached = self._cache.get(text, model=self._cache_namespace)
        if cached is not None:
            logger.debug("Using cached query embedding")
            return cached
        vector = await self._embedder.embed(text)
        self._cache.put(text, vector, model=self._cache_namespace)
        return vector

    async def _vector_scores(
        self,
        owner_id: str,
        vector: list[float],
        entity_types: tuple[EntityType, ...],
        limit: int,
        exclude: tuple[int, EntityType] | None = None,
    ) -> dict[ResultKey, float]:
        def exclude_id_for(et: EntityType) -> int | None:
            if exclude is not None and exclude[1] == et:
                return exclude[0]
            return None

        per_type = await asyncio.gather(
            *(
                asyncio.to_thread(
                    self._vector.query, et, vector, limit, owner_id, exclude_id_for(et)
                )
                for et in entity_types
            )
        )
        min_similarity = self._config.min_similarity
        scored = (
            ((hit.entity_id, et), self._vector.similarity(hit.distance))
            for et, hits in zip(entity_types, per_type)
            for hit in hits
        )
        return collect_best(
            (key, sim) for key, sim in scored if sim >= min_similarity
        )

    # ------------------------------------------------------------------
    # Failures
    # ------------------------------------------------------------------

    def _store_failure(
        self, error: BaseException, query_label: str
    ) -> Result[SearchResults, RetrievalError]:
        if not isinstance(error, TaskmailError):
            raise error
        record_metric("search_requests_total", 1, {"outcome": "error"})
        if isinstance(error, RetrievalError):
            logger.error("Search store failure: %s", error.to_dict())
            return Err(error)
        logger.error("Search backend unavailable: %s", error.to_dict())
        return Err(
            RetrievalError(
                "Search backend unavailable",
                query=query_label,
                error_code=error.error_code or "STORE_UNAVAILABLE",
                context={"error_type": type(error).__name__},
            )
        )


async def _empty_scores() -> dict[ResultKey, float]:
    return {}
