"""
Index maintenance hooks for the sync and task services.

When an entity's text changes, its lexical document is rebuilt and its
embedding is invalidated in the same transaction, so the backfiller picks it
up on the next run and no search ever sees a vector for stale text.
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from taskmail.common.exceptions import RetrievalError
from taskmail.config.loader import TaskmailConfig, get_config
from taskmail.db.models import EntityType, table_for
from taskmail.db.repository import EntityTextRepository, RawText
from taskmail.db.session import SessionFactory, store_scope
from taskmail.retrieval.lexical_index import document_expression

logger = logging.getLogger(__name__)


class Indexer:
    """
    Inbound interface for collaborators that write entity text.
    """

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        fts_config: str = "english",
        repository: EntityTextRepository | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._fts_config = fts_config
        self._repository = repository or EntityTextRepository(session_factory)

    @classmethod
    def from_config(
        cls,
        config: TaskmailConfig | None = None,
        session_factory: SessionFactory | None = None,
    ) -> Indexer:
        config = config or get_config()
        return cls(session_factory, fts_config=config.lexical.fts_config)

    def notify_text_changed(
        self, entity_id: int, entity_type: EntityType | str
    ) -> None:
        """
        Rebuild the lexical document and null the embedding.

        Raises:
            RetrievalError: unknown entity or database failure
        """
        spec = table_for(entity_type)
        stmt = text(
            f"""
            UPDATE {spec.table}
            SET search_vector = {document_expression(spec.entity_type)},
                embedding = NULL,
                embedding_generated_at = NULL,
                embedding_skipped_at = NULL
            WHERE id = :entity_id
            """
        )
        with store_scope(self._session_factory, "reindex", table=spec.table) as session:
            result = session.execute(
                stmt, {"entity_id": entity_id, "fts_config": self._fts_config}
            )
            if result.rowcount == 0:
                raise RetrievalError(
                    "Entity not found",
                    error_code="ENTITY_NOT_FOUND",
                    entity_type=spec.entity_type.value,
                    entity_id=entity_id,
                )
        logger.info(
            "Text changed for %s %s; embedding invalidated",
            spec.entity_type.value,
            entity_id,
        )

    def get_raw_text(
        self, entity_id: int, entity_type: EntityType | str
    ) -> RawText | None:
        return self._repository.get_raw_text(entity_type, entity_id)
