"""
Search API routes.

The caller's identity arrives in the X-User-ID header; every route is scoped
to that owner except the text-changed hook, which is called by the sync and
task services.
"""

import asyncio
import hashlib
import logging
import time

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from taskmail.api.models import (
    CoverageItem,
    CoverageResponse,
    SearchRequest,
    SearchResponse,
    TextChangedResponse,
)
from taskmail.common.exceptions import RetrievalError
from taskmail.db.models import EntityType
from taskmail.indexer import Indexer
from taskmail.observability import trace_operation
from taskmail.retrieval.hybrid_search import HybridSearchEngine
from taskmail.retrieval.results import SearchOptions
from taskmail.retrieval.vector_index import VectorIndexStore

logger = logging.getLogger(__name__)
router = APIRouter()


def require_owner(x_user_id: str = Header(..., min_length=1)) -> str:
    return x_user_id


def get_search_engine(request: Request) -> HybridSearchEngine:
    return request.app.state.search_engine


def get_indexer(request: Request) -> Indexer:
    return request.app.state.indexer


def get_vector_store(request: Request) -> VectorIndexStore:
    return request.app.state.vector_store


@router.post("/search", response_model=SearchResponse)
@trace_operation("api_search")
async def search_endpoint(
    payload: SearchRequest,
    http_request: Request,
    owner_id: str = Depends(require_owner),
    engine: HybridSearchEngine = Depends(get_search_engine),
) -> SearchResponse:
    """
    Hybrid search over the caller's emails and tasks.

    An empty query is a valid request with no results. A store outage is a
    503, distinct from an empty result list.
    """
    correlation_id = getattr(http_request.state, "correlation_id", None)
    start_time = time.perf_counter()
    options = SearchOptions(
        limit=payload.limit,
        use_lexical=payload.use_lexical,
        use_semantic=payload.use_semantic,
        entity_types=tuple(payload.entity_types),
    )

    outcome = await engine.search(owner_id, payload.query, options)
    if outcome.is_err():
        error = outcome.unwrap_err()
        logger.error(
            "Search failed (query_hash=%s): %s",
            hashlib.sha256(payload.query.encode()).hexdigest()[:8],
            error.to_dict(),
        )
        raise HTTPException(
            status_code=503,
            detail={
                "error_code": error.error_code or "SEARCH_UNAVAILABLE",
                "message": "Search is temporarily unavailable",
            },
        )

    results = outcome.unwrap()
    return SearchResponse(
        correlation_id=correlation_id,
        results=results.results,
        total_count=len(results.results),
        degraded=results.degraded,
        query_time_ms=(time.perf_counter() - start_time) * 1000,
    )


@router.post(
    "/entities/{entity_type}/{entity_id}/text-changed",
    response_model=TextChangedResponse,
)
async def text_changed_endpoint(
    entity_type: EntityType,
    entity_id: int,
    indexer: Indexer = Depends(get_indexer),
) -> TextChangedResponse:
    """Rebuild the lexical document and queue the entity for re-embedding."""
    try:
        await asyncio.to_thread(indexer.notify_text_changed, entity_id, entity_type)
    except RetrievalError as e:
        if e.error_code == "ENTITY_NOT_FOUND":
            raise HTTPException(status_code=404, detail="Entity not found") from e
        raise HTTPException(
            status_code=503, detail="Index store is temporarily unavailable"
        ) from e
    return TextChangedResponse(entity_type=entity_type, entity_id=entity_id)


@router.get("/embeddings/coverage", response_model=CoverageResponse)
async def coverage_endpoint(
    owner_id: str = Depends(require_owner),
    vector_store: VectorIndexStore = Depends(get_vector_store),
) -> CoverageResponse:
    """Embedding progress per entity type for the caller."""
    items: list[CoverageItem] = []
    try:
        for entity_type in EntityType:
            stats = await asyncio.to_thread(vector_store.coverage, entity_type, owner_id)
            items.append(
                CoverageItem(
                    entity_type=stats.entity_type,
                    total=stats.total,
                    embedded=stats.embedded,
                    skipped=stats.skipped,
                    pending=stats.pending,
                    percent_embedded=stats.percent_embedded,
                )
            )
    except RetrievalError as e:
        raise HTTPException(
            status_code=503, detail="Index store is temporarily unavailable"
        ) from e
    return CoverageResponse(owner_id=owner_id, coverage=items)
