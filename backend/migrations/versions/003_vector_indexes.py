"""Vector indexes: HNSW (IVFFlat fallback) plus the exact fallback index.

Revision ID: 003_vector_indexes
Revises: 002_fts_triggers
Create Date: 2026-10-17

HNSW parameters and the operator class follow the vector_index configuration
(TASKMAIL_HNSW_M, TASKMAIL_HNSW_EF_CONSTRUCTION, TASKMAIL_VECTOR_METRIC).
Managed Postgres builds that cap HNSW dimensions get IVFFlat instead.
"""

from __future__ import annotations

from alembic import op
from psycopg2 import errors as psycopg_errors
from taskmail.config.loader import get_config
from taskmail.config.models import VectorIndexConfig

revision = "003_vector_indexes"
down_revision = "002_fts_triggers"
branch_labels = None
depends_on = None

TABLES = ("emails", "tasks")

OPCLASSES = {"cosine": "vector_cosine_ops", "l2": "vector_l2_ops"}


def _create_ann_index(table: str, cfg: VectorIndexConfig) -> None:
    name = f"ix_{table}_embedding_ann"
    opclass = OPCLASSES[cfg.metric]
    try:
        op.execute(
            f"CREATE INDEX CONCURRENTLY IF NOT EXISTS {name} ON {table} "
            f"USING hnsw (embedding {opclass}) "
            f"WITH (m = {cfg.hnsw_m}, ef_construction = {cfg.hnsw_ef_construction})"
        )
    except Exception as exc:
        orig = getattr(exc, "orig", exc)
        if isinstance(
            orig, (psycopg_errors.ProgramLimitExceeded, psycopg_errors.UndefinedObject)
        ):
            op.execute(f"DROP INDEX IF EXISTS {name}")
            op.execute(
                f"CREATE INDEX CONCURRENTLY IF NOT EXISTS {name} ON {table} "
                f"USING ivfflat (embedding {opclass}) "
                f"WITH (lists = {cfg.ivfflat_lists})"
            )
            return
        raise


def upgrade() -> None:
    cfg = get_config().vector_index
    ctx = op.get_context()
    with ctx.autocommit_block():
        for table in TABLES:
            op.execute(
                f"CREATE INDEX CONCURRENTLY IF NOT EXISTS ix_{table}_user_embedded "
                f"ON {table} (user_id, id) WHERE embedding IS NOT NULL"
            )
            _create_ann_index(table, cfg)


def downgrade() -> None:
    ctx = op.get_context()
    with ctx.autocommit_block():
        for table in TABLES:
            op.execute(f"DROP INDEX IF EXISTS ix_{table}_embedding_ann")
            op.execute(f"DROP INDEX IF EXISTS ix_{table}_user_embedded")
