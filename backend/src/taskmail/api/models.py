"""
API request/response models.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from taskmail.db.models import EntityType
from taskmail.retrieval.results import ALL_ENTITY_TYPES, SearchResult


class SearchRequest(BaseModel):
    """Search request payload."""

    model_config = ConfigDict(extra="forbid")

    query: str = Field(..., description="Search query text")
    limit: int | None = Field(default=None, ge=1, le=500)
    use_lexical: bool = True
    use_semantic: bool = True
    entity_types: list[EntityType] = Field(
        default_factory=lambda: list(ALL_ENTITY_TYPES)
    )


class SearchResponse(BaseModel):
    """Search response payload."""

    correlation_id: str | None = None
    results: list[SearchResult] = Field(default_factory=list)
    total_count: int = 0
    degraded: bool = False
    query_time_ms: float = 0.0


class TextChangedResponse(BaseModel):
    entity_type: EntityType
    entity_id: int
    embedding_invalidated: bool = True


class CoverageItem(BaseModel):
    entity_type: EntityType
    total: int
    embedded: int
    skipped: int
    pending: int
    percent_embedded: float


class CoverageResponse(BaseModel):
    owner_id: str
    coverage: list[CoverageItem] = Field(default_factory=list)
