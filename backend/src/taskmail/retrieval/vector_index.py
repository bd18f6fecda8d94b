"""
Vector index store.

Owns the `embedding` column of each entity table and the indexes over it:
an HNSW approximate index (IVFFlat when HNSW cannot be built) plus an exact
fallback index so similarity queries keep working while the ANN index is
missing or rebuilding.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import numpy as np
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError
from taskmail.common.exceptions import (
    DimensionMismatchError,
    RetrievalError,
    TransactionError,
)
from taskmail.config.models import VectorIndexConfig
from taskmail.db.models import EntityType, table_for
from taskmail.db.session import SessionFactory, session_scope, store_scope

logger = logging.getLogger(__name__)

MAX_QUERY_K = 500

_DISTANCE_OPERATORS = {"cosine": "<=>", "l2": "<->"}
_OPCLASSES = {"cosine": "vector_cosine_ops", "l2": "vector_l2_ops"}


class VectorHit(BaseModel):
    """One nearest-neighbour row: smaller distance is more similar."""

    model_config = ConfigDict(frozen=True)

    entity_id: int
    distance: float


class CoverageStats(BaseModel):
    """Embedding progress for one entity type."""

    entity_type: EntityType
    total: int
    embedded: int
    skipped: int

    @property
    def pending(self) -> int:
        return max(0, self.total - self.embedded - self.skipped)

    @property
    def percent_embedded(self) -> float:
        return round(100.0 * self.embedded / self.total, 2) if self.total else 0.0


def _normalize_dim(dim: int) -> int:
    """Validate dimension to avoid invalid SQL constructs."""
    if isinstance(dim, bool) or not isinstance(dim, int) or dim <= 0:
        raise ValueError("canonical_dim must be a positive integer")
    return dim


def _to_vector_literal(vector: np.ndarray) -> str:
    return "[" + ",".join(map(repr, vector.tolist())) + "]"


def ann_index_name(entity_type: EntityType | str) -> str:
    return f"ix_{table_for(entity_type).table}_embedding_ann"


def exact_index_name(entity_type: EntityType | str) -> str:
    return f"ix_{table_for(entity_type).table}_user_embedded"


class VectorIndexStore(ABC):
    """Persisted embeddings and similarity queries, per entity type."""

    canonical_dim: int
    metric: str

    @abstractmethod
    def upsert_embedding(
        self, entity_type: EntityType, entity_id: int, vector: list[float]
    ) -> None:
        """Write a vector and stamp embedding_generated_at."""

    @abstractmethod
    def query(
        self,
        entity_type: EntityType,
        vector: list[float],
        k: int,
        owner_id: str,
        exclude_id: int | None = None,
    ) -> list[VectorHit]:
        """Return the k nearest embedded entities of `owner_id`, nearest first."""

    @abstractmethod
    def get_embedding(
        self, entity_type: EntityType, entity_id: int, owner_id: str
    ) -> list[float] | None:
        """Stored vector of one entity, or None when absent."""

    @abstractmethod
    def clear_embedding(self, entity_type: EntityType, entity_id: int) -> None:
        """Null the embedding so the backfiller picks the entity up again."""

    @abstractmethod
    def coverage(
        self, entity_type: EntityType, owner_id: str | None = None
    ) -> CoverageStats: ...

    def similarity(self, distance: float) -> float:
        """Map a distance from `query` to a similarity in [0, 1]."""
        if self.metric == "l2":
            return 1.0 / (1.0 + max(0.0, distance))
        return max(0.0, min(1.0, 1.0 - distance))


class PgvectorIndexStore(VectorIndexStore):
    """Vector store backed by Postgres/pgvector."""

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        canonical_dim: int = 768,
        config: VectorIndexConfig | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.canonical_dim = _normalize_dim(canonical_dim)
        self._config = config or VectorIndexConfig()
        self.metric = self._config.metric

    def _scope(self, operation: str, table: str):
        return store_scope(self._session_factory, operation, table=table)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _validate(self, vector: list[float], entity_id: int | None = None) -> np.ndarray:
        if len(vector) != self.canonical_dim:
            logger.error(
                "Rejected embedding with %d dimensions (expected %d) for entity %s",
                len(vector),
                self.canonical_dim,
                entity_id,
            )
            raise DimensionMismatchError(
                "Embedding dimension mismatch",
                expected=self.canonical_dim,
                actual=len(vector),
                entity_id=entity_id,
            )
        try:
            arr = np.asarray(vector, dtype=float)
        except (TypeError, ValueError) as e:
            raise DimensionMismatchError(
                "Embedding must contain numeric values",
                expected=self.canonical_dim,
                actual=len(vector),
            ) from e
        if not np.all(np.isfinite(arr)):
            raise DimensionMismatchError(
                "Embedding contains non-finite values",
                expected=self.canonical_dim,
                actual=len(vector),
            )
        return arr

    def upsert_embedding(
        self, entity_type: EntityType, entity_id: int, vector: list[float]
    ) -> None:
        arr = self._validate(vector, entity_id)
        table = table_for(entity_type).table
        stmt = text(
            f"""
            UPDATE {table}
            SET embedding = CAST(:vec AS vector({self.canonical_dim})),
                embedding_generated_at = now(),
                embedding_skipped_at = NULL
            WHERE id = :entity_id
            """
        )
        with self._scope("embedding write", table) as session:
            result = session.execute(
                stmt, {"vec": _to_vector_literal(arr), "entity_id": entity_id}
            )
            if result.rowcount == 0:
                raise RetrievalError(
                    "Entity not found for embedding write",
                    error_code="ENTITY_NOT_FOUND",
                    entity_type=EntityType(entity_type).value,
                    entity_id=entity_id,
                )

    def clear_embedding(self, entity_type: EntityType, entity_id: int) -> None:
        table = table_for(entity_type).table
        stmt = text(
            f"""
            UPDATE {table}
            SET embedding = NULL,
                embedding_generated_at = NULL,
                embedding_skipped_at = NULL
            WHERE id = :entity_id
            """
        )
        with self._scope("embedding clear", table) as session:
            session.execute(stmt, {"entity_id": entity_id})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query(
        self,
        entity_type: EntityType,
        vector: list[float],
        k: int,
        owner_id: str,
        exclude_id: int | None = None,
    ) -> list[VectorHit]:
        """
        Nearest neighbours by the configured metric.

        All values are bound; only the table name, operator and dimension
        (all from fixed lookups) are interpolated.
        """
        if k <= 0:
            return []
        k = min(k, MAX_QUERY_K)
        arr = self._validate(vector)
        table = table_for(entity_type).table
        operator = _DISTANCE_OPERATORS[self.metric]

        params: dict[str, Any] = {
            "owner_id": owner_id,
            "query_vec": _to_vector_literal(arr),
            "limit": k,
        }
        exclude_clause = ""
        if exclude_id is not None:
            exclude_clause = "AND e.id <> :exclude_id"
            params["exclude_id"] = exclude_id

        stmt = text(
            f"""
            SELECT
                e.id AS entity_id,
                e.embedding {operator} CAST(:query_vec AS vector({self.canonical_dim})) AS distance
            FROM {table} e
            WHERE e.user_id = :owner_id
              AND e.embedding IS NOT NULL
              {exclude_clause}
            ORDER BY distance, e.id
            LIMIT :limit
            """
        )

        with self._scope("vector search", table) as session:
            # Transaction-local, like SET LOCAL.
            session.execute(
                text("SELECT set_config('hnsw.ef_search', :ef_search, true)"),
                {"ef_search": str(self._config.ef_search)},
            )
            rows = session.execute(stmt, params).fetchall()

        return [
            VectorHit(entity_id=int(row.entity_id), distance=float(row.distance))
            for row in rows
            if row.distance is not None
        ]

    def get_embedding(
        self, entity_type: EntityType, entity_id: int, owner_id: str
    ) -> list[float] | None:
        spec = table_for(entity_type)
        model = spec.model
        stmt = select(model.embedding).where(
            model.id == entity_id, model.user_id == owner_id
        )
        with self._scope("embedding lookup", spec.table) as session:
            value = session.execute(stmt).scalar_one_or_none()
        if value is None:
            return None
        return [float(v) for v in value]

    def coverage(
        self, entity_type: EntityType, owner_id: str | None = None
    ) -> CoverageStats:
        table = table_for(entity_type).table
        owner_clause = "WHERE user_id = :owner_id" if owner_id is not None else ""
        stmt = text(
            f"""
            SELECT
                count(*) AS total,
                count(embedding) AS embedded,
                count(*) FILTER (
                    WHERE embedding IS NULL AND embedding_skipped_at IS NOT NULL
                ) AS skipped
            FROM {table}
            {owner_clause}
            """
        )
        params = {"owner_id": owner_id} if owner_id is not None else {}
        with self._scope("coverage query", table) as session:
            row = session.execute(stmt, params).one()
        return CoverageStats(
            entity_type=EntityType(entity_type),
            total=row.total,
            embedded=row.embedded,
            skipped=row.skipped,
        )

    # ------------------------------------------------------------------
    # Index maintenance
    # ------------------------------------------------------------------

    def _ann_statements(self, entity_type: EntityType) -> tuple[str, str]:
        table = table_for(entity_type).table
        name = ann_index_name(entity_type)
        opclass = _OPCLASSES[self.metric]
        hnsw = (
            f"CREATE INDEX IF NOT EXISTS {name} ON {table} "
            f"USING hnsw (embedding {opclass}) "
            f"WITH (m = {self._config.hnsw_m}, "
            f"ef_construction = {self._config.hnsw_ef_construction})"
        )
        ivfflat = (
            f"CREATE INDEX IF NOT EXISTS {name} ON {table} "
            f"USING ivfflat (embedding {opclass}) "
            f"WITH (lists = {self._config.ivfflat_lists})"
        )
        return hnsw, ivfflat

    def _create_ann_index(self, entity_type: EntityType) -> str:
        hnsw_sql, ivfflat_sql = self._ann_statements(entity_type)
        table = table_for(entity_type).table
        try:
            with session_scope(self._session_factory) as session:
                session.execute(text(hnsw_sql))
            return "hnsw"
        except TransactionError as exc:
            if not isinstance(exc.__cause__, DBAPIError):
                raise
            logger.warning(
                "HNSW index build failed for %s (%s); falling back to IVFFlat",
                table,
                type(exc.__cause__.orig).__name__,
            )
        with self._scope("ivfflat index build", table) as session:
            session.execute(text(f"DROP INDEX IF EXISTS {ann_index_name(entity_type)}"))
            session.execute(text(ivfflat_sql))
        return "ivfflat"

    def _create_exact_index(self, entity_type: EntityType) -> None:
        table = table_for(entity_type).table
        with self._scope("exact index build", table) as session:
            session.execute(
                text(
                    f"CREATE INDEX IF NOT EXISTS {exact_index_name(entity_type)} "
                    f"ON {table} (user_id, id) WHERE embedding IS NOT NULL"
                )
            )

    def ensure_indexes(self, entity_type: EntityType) -> str:
        """
        Create the exact fallback index, then the ANN index.

        Returns the ANN access method that was built ("hnsw" or "ivfflat").
        """
        self._create_exact_index(entity_type)
        kind = self._create_ann_index(entity_type)
        logger.info("Vector indexes ready for %s (ann=%s)", entity_type, kind)
        return kind

    def rebuild_ann_index(self, entity_type: EntityType) -> str:
        """Drop and rebuild the ANN index; queries use the exact index meanwhile."""
        self._create_exact_index(entity_type)
        with self._scope("ann index drop", table_for(entity_type).table) as session:
            session.execute(text(f"DROP INDEX IF EXISTS {ann_index_name(entity_type)}"))
        kind = self._create_ann_index(entity_type)
        logger.info("Rebuilt ANN index for %s (ann=%s)", entity_type, kind)
        return kind
