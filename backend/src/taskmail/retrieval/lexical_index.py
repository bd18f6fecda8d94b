"""
Lexical index store.

Two layers over each entity table:
  1. Full-text search on the weighted `search_vector` column, ranked with
     ts_rank_cd.
  2. A trigram layer (pg_trgm word_similarity) that catches misspellings and
     short tokens the stemmer drops. It only runs when full-text search comes
     back thin or the query has a short term.

The `search_vector` column is kept current by a database trigger; `index()`
recomputes it explicitly for reindex jobs and text-changed notifications.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict
from sqlalchemy import bindparam, text
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.exc import DataError, ProgrammingError
from sqlalchemy.orm import Session
from sqlalchemy.types import TEXT
from taskmail.common.exceptions import RetrievalError
from taskmail.config.models import LexicalConfig
from taskmail.db.models import EntityTable, EntityType, table_for
from taskmail.db.session import SessionFactory, store_scope
from taskmail.retrieval.query_builder import LexicalQuery

logger = logging.getLogger(__name__)

MAX_LEXICAL_LIMIT = 500

# ts_rank_cd normalization 32 maps rank into [0, 1): rank / (rank + 1).
_TS_RANK_NORMALIZATION = 32

# Extra weighted columns beyond primary (A) and secondary (C).
_EXTRA_WEIGHTED_COLUMNS: dict[EntityType, tuple[tuple[str, str], ...]] = {
    EntityType.EMAIL: (("sender", "B"),),
    EntityType.TASK: (),
}

LexicalHitKind = Literal["fulltext", "trigram"]


class LexicalHit(BaseModel):
    """
    One lexical match.

    For fulltext hits `rank` is the normalized ts_rank_cd in [0, 1); for
    trigram hits it is the mean best word similarity across query terms.
    """

    model_config = ConfigDict(frozen=True)

    entity_id: int
    rank: float
    kind: LexicalHitKind


def document_expression(entity_type: EntityType | str) -> str:
    """
    SQL expression building the weighted tsvector for one entity row.

    The text search configuration is read from the `:fts_config` bind.
    """
    spec = table_for(entity_type)
    columns = [(spec.primary_column, "A")]
    columns.extend(_EXTRA_WEIGHTED_COLUMNS[spec.entity_type])
    columns.append((spec.secondary_column, "C"))
    parts = [
        f"setweight(to_tsvector(CAST(:fts_config AS regconfig), "
        f"coalesce({column}, '')), '{weight}')"
        for column, weight in columns
    ]
    return " || ".join(parts)


class LexicalIndexStore(ABC):
    """Keyword search over entity text, scoped to one owner."""

    @abstractmethod
    def index(self, entity_type: EntityType, entity_id: int) -> None:
        """Recompute the lexical document of one entity."""

    @abstractmethod
    def search(
        self,
        entity_type: EntityType,
        owner_id: str,
        query: LexicalQuery,
        limit: int,
    ) -> list[LexicalHit]:
        """
        Return lexical hits for `query`, best first.

        Fulltext hits always precede trigram hits; an entity appears once.
        """


class PostgresLexicalIndexStore(LexicalIndexStore):
    """Lexical store backed by Postgres full-text search and pg_trgm."""

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        config: LexicalConfig | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config or LexicalConfig()

    def _scope(self, operation: str, table: str):
        return store_scope(self._session_factory, operation, table=table)

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def index(self, entity_type: EntityType, entity_id: int) -> None:
        spec = table_for(entity_type)
        stmt = text(
            f"""
            UPDATE {spec.table}
            SET search_vector = {document_expression(entity_type)}
            WHERE id = :entity_id
            """
        )
        with self._scope("lexical index", spec.table) as session:
            result = session.execute(
                stmt,
                {"entity_id": entity_id, "fts_config": self._config.fts_config},
            )
            if result.rowcount == 0:
                raise RetrievalError(
                    "Entity not found for lexical indexing",
                    error_code="ENTITY_NOT_FOUND",
                    entity_type=spec.entity_type.value,
                    entity_id=entity_id,
                )

    def reindex_all(self, entity_type: EntityType) -> int:
        """Recompute every lexical document of one type. Returns rows touched."""
        spec = table_for(entity_type)
        stmt = text(
            f"UPDATE {spec.table} SET search_vector = {document_expression(entity_type)}"
        )
        with self._scope("lexical reindex", spec.table) as session:
            result = session.execute(stmt, {"fts_config": self._config.fts_config})
            count = result.rowcount or 0
        logger.info("Reindexed %d %s documents", count, spec.entity_type.value)
        return count

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        entity_type: EntityType,
        owner_id: str,
        query: LexicalQuery,
        limit: int,
    ) -> list[LexicalHit]:
        if limit <= 0:
            return []
        limit = min(limit, MAX_LEXICAL_LIMIT)
        spec = table_for(entity_type)

        with self._scope("lexical search", spec.table) as session:
            hits = self._fulltext(session, spec, owner_id, query, limit)
            if self._needs_fuzzy(hits, query):
                seen = {hit.entity_id for hit in hits}
                for hit in self._trigram(session, spec, owner_id, query, limit):
                    if hit.entity_id not in seen:
                        seen.add(hit.entity_id)
                        hits.append(hit)

        return hits[:limit]

    def _needs_fuzzy(self, hits: list[LexicalHit], query: LexicalQuery) -> bool:
        return len(hits) < self._config.min_hits_before_fuzzy or query.has_short_term(
            self._config.short_token_length
        )

    def _fulltext(
        self,
        session: Session,
        spec: EntityTable,
        owner_id: str,
        query: LexicalQuery,
        limit: int,
    ) -> list[LexicalHit]:
        """
        Run the tsquery; on a syntax error fall back to plainto_tsquery.

        The first attempt runs in a savepoint so the fallback can reuse the
        same transaction.
        """
        params: dict[str, Any] = {
            "fts_config": self._config.fts_config,
            "query": query.tsquery,
            "owner_id": owner_id,
            "rank_norm": _TS_RANK_NORMALIZATION,
            "limit": limit,
        }
        try:
            with session.begin_nested():
                rows = session.execute(
                    self._fulltext_sql(spec, "to_tsquery"), params
                ).fetchall()
        except (DataError, ProgrammingError) as exc:
            logger.warning(
                "to_tsquery rejected query (%s), falling back to plainto_tsquery",
                type(exc.orig).__name__ if exc.orig is not None else type(exc).__name__,
            )
            params["query"] = query.text
            rows = session.execute(
                self._fulltext_sql(spec, "plainto_tsquery"), params
            ).fetchall()

        return [
            LexicalHit(entity_id=int(row.entity_id), rank=float(row.rank), kind="fulltext")
            for row in rows
        ]

    @staticmethod
    def _fulltext_sql(spec: EntityTable, tsquery_func: str):
        return text(
            f"""
            WITH q AS (
                SELECT {tsquery_func}(CAST(:fts_config AS regconfig), :query) AS tsq
            )
            SELECT
                e.id AS entity_id,
                ts_rank_cd(e.search_vector, q.tsq, :rank_norm) AS rank
            FROM {spec.table} e
            CROSS JOIN q
            WHERE e.user_id = :owner_id
              AND e.search_vector @@ q.tsq
            ORDER BY rank DESC, e.id
            LIMIT :limit
            """
        )

    def _trigram(
        self,
        session: Session,
        spec: EntityTable,
        owner_id: str,
        query: LexicalQuery,
        limit: int,
    ) -> list[LexicalHit]:
        """
        Trigram layer: score = mean over terms of the best word similarity
        against the primary or secondary column.
        """
        terms = list(query.fuzzy_terms)
        primary = f"coalesce(e.{spec.primary_column}, '')"
        secondary = f"coalesce(e.{spec.secondary_column}, '')"
        stmt = text(
            f"""
            WITH terms AS (SELECT unnest(:terms) AS term),
            scored AS (
                SELECT
                    e.id AS entity_id,
                    GREATEST(
                        word_similarity(t.term, {primary}),
                        word_similarity(t.term, {secondary})
                    ) AS sim
                FROM {spec.table} e
                CROSS JOIN terms t
                WHERE e.user_id = :owner_id
                  AND (t.term <% {primary} OR t.term <% {secondary})
            )
            SELECT entity_id, sum(sim) / :term_count AS rank
            FROM scored
            GROUP BY entity_id
            ORDER BY rank DESC, entity_id
            LIMIT :limit
            """
        ).bindparams(bindparam("terms", type_=ARRAY(TEXT())))

        # Transaction-local threshold for the <% operator.
        session.execute(
            text("SELECT set_config('pg_trgm.word_similarity_threshold', :threshold, true)"),
            {"threshold": str(self._config.trigram_threshold)},
        )
        rows = session.execute(
            stmt,
            {
                "terms": terms,
                "owner_id": owner_id,
                "term_count": float(len(terms)),
                "limit": limit,
            },
        ).fetchall()
        return [
            LexicalHit(entity_id=int(row.entity_id), rank=float(row.rank), kind="trigram")
            for row in rows
        ]
