"""Initial schema: emails and tasks with embedding columns.

Revision ID: 001_initial_schema
Revises: None
Create Date: 2026-10-17

The vector width is fixed at deploy time from CANONICAL_DIM; changing it
later needs a new migration that re-creates the column and re-embeds.
"""

from __future__ import annotations

import os

import sqlalchemy as sa
from alembic import op
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects.postgresql import TSVECTOR

revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

CANONICAL_DIM = int(
    os.getenv("TASKMAIL_CANONICAL_DIM") or os.getenv("CANONICAL_DIM") or "768"
)


def _derived_columns() -> list[sa.Column]:
    return [
        sa.Column("search_vector", TSVECTOR(), nullable=True),
        sa.Column("embedding", Vector(CANONICAL_DIM), nullable=True),
        sa.Column("embedding_generated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("embedding_skipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        "emails",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("sender", sa.String(512), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        *_derived_columns(),
    )
    op.create_index("ix_emails_user_id", "emails", ["user_id"])
    op.create_index(
        "ix_emails_embedding_pending",
        "emails",
        ["created_at", "id"],
        postgresql_where=sa.text("embedding IS NULL"),
    )

    op.create_table(
        "tasks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        *_derived_columns(),
    )
    op.create_index("ix_tasks_user_id", "tasks", ["user_id"])
    op.create_index(
        "ix_tasks_embedding_pending",
        "tasks",
        ["created_at", "id"],
        postgresql_where=sa.text("embedding IS NULL"),
    )


def downgrade() -> None:
    op.drop_table("tasks")
    op.drop_table("emails")
