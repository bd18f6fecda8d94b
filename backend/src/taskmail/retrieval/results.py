"""
Search request and result models.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from taskmail.db.models import EntityType

MatchKind = Literal["lexical", "semantic", "hybrid"]

ALL_ENTITY_TYPES: tuple[EntityType, ...] = (EntityType.EMAIL, EntityType.TASK)


class SearchOptions(BaseModel):
    """Per-request search switches."""

    model_config = ConfigDict(extra="forbid")

    limit: int | None = Field(default=None, ge=1, le=500)
    use_lexical: bool = True
    use_semantic: bool = True
    entity_types: tuple[EntityType, ...] = ALL_ENTITY_TYPES

    @model_validator(mode="after")
    def dedupe_entity_types(self) -> SearchOptions:
        self.entity_types = tuple(dict.fromkeys(self.entity_types))
        return self


class SearchResult(BaseModel):
    """
    One ranked hit.

    Only ids are returned; hydrating subjects and bodies is the caller's job.
    `lexical_score` and `semantic_score` are the normalized component scores
    that produced `score`.
    """

    model_config = ConfigDict(frozen=True)

    entity_id: int
    entity_type: EntityType
    score: float
    match_kind: MatchKind
    lexical_score: float | None = None
    semantic_score: float | None = None

    @property
    def key(self) -> tuple[int, EntityType]:
        return (self.entity_id, self.entity_type)


class SearchResults(BaseModel):
    """Ranked results for one request."""

    query: str
    results: list[SearchResult] = Field(default_factory=list)
    degraded: bool = Field(
        default=False,
        description="Semantic search was requested but skipped (provider failure or deadline)",
    )

    def __len__(self) -> int:
        return len(self.results)
