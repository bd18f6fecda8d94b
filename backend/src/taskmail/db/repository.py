"""
Entity text access.

This is the narrow read interface the search core has onto rows owned by the
sync and task services: the raw text of one entity, and the queue of
entities still waiting for an embedding.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select, update
from taskmail.db.models import EntityType, table_for
from taskmail.db.session import SessionFactory, session_scope

logger = logging.getLogger(__name__)


class RawText(BaseModel):
    """The text fields of one entity, as stored."""

    model_config = ConfigDict(frozen=True)

    entity_id: int
    entity_type: EntityType
    owner_id: str
    primary_text: str = ""
    secondary_text: str = ""
    created_at: datetime | None = None


def _to_raw_text(row, entity_type: EntityType) -> RawText:
    spec = table_for(entity_type)
    return RawText(
        entity_id=row.id,
        entity_type=entity_type,
        owner_id=row.user_id,
        primary_text=getattr(row, spec.primary_column) or "",
        secondary_text=getattr(row, spec.secondary_column) or "",
        created_at=row.created_at,
    )


class EntityTextRepository:
    """Reads entity text and maintains the backfill skip marker."""

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._session_factory = session_factory

    def get_raw_text(
        self, entity_type: EntityType | str, entity_id: int
    ) -> RawText | None:
        entity_type = EntityType(entity_type)
        model = table_for(entity_type).model
        with session_scope(self._session_factory) as session:
            row = session.get(model, entity_id)
            if row is None:
                return None
            return _to_raw_text(row, entity_type)

    def fetch_unembedded(
        self,
        entity_type: EntityType | str,
        limit: int,
        owner_id: str | None = None,
    ) -> list[RawText]:
        """Fetch entities without an embedding, oldest first."""
        entity_type = EntityType(entity_type)
        model = table_for(entity_type).model
        stmt = (
            select(model)
            .where(model.embedding.is_(None))
            .where(model.embedding_skipped_at.is_(None))
            .order_by(model.created_at.asc(), model.id.asc())
            .limit(limit)
        )
        if owner_id is not None:
            stmt = stmt.where(model.user_id == owner_id)
        with session_scope(self._session_factory) as session:
            rows = session.execute(stmt).scalars().all()
            return [_to_raw_text(row, entity_type) for row in rows]

    def mark_skipped(self, entity_type: EntityType | str, entity_id: int) -> None:
        """Record that an entity's text is too short to embed."""
        model = table_for(entity_type).model
        stmt = (
            update(model)
            .where(model.id == entity_id)
            .where(model.embedding.is_(None))
            .values(embedding_skipped_at=datetime.now(timezone.utc))
        )
        with session_scope(self._session_factory) as session:
            session.execute(stmt)
        logger.debug("Marked %s %s as skipped", entity_type, entity_id)
