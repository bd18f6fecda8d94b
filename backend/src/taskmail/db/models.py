"""
Database models for the searchable corpora.

Tables: emails, tasks. Both carry the derived search columns owned by this
package (search_vector, embedding, embedding_generated_at,
embedding_skipped_at); the remaining columns are written by the sync and
task-extraction services.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import TSVECTOR
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class EntityType(str, enum.Enum):
    """The two searchable entity kinds."""

    EMAIL = "email"
    TASK = "task"


class Email(Base):
    """
    A synced email message, scoped to the user whose account received it.
    """

    __tablename__ = "emails"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    sender: Mapped[str | None] = mapped_column(String(512), nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)

    search_vector: Mapped[str | None] = mapped_column(TSVECTOR, nullable=True)
    embedding: Mapped[list[float] | None] = mapped_column(Vector(), nullable=True)
    embedding_generated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    embedding_skipped_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_emails_search_vector", "search_vector", postgresql_using="gin"),
        Index(
            "ix_emails_embedding_pending",
            "created_at",
            "id",
            postgresql_where=text("embedding IS NULL"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Email(id={self.id}, user_id='{self.user_id}', "
            f"subject='[REDACTED]', embedded={self.embedding is not None})>"
        )


class Task(Base):
    """
    A task extracted from email or created by the user.
    """

    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    search_vector: Mapped[str | None] = mapped_column(TSVECTOR, nullable=True)
    embedding: Mapped[list[float] | None] = mapped_column(Vector(), nullable=True)
    embedding_generated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    embedding_skipped_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_tasks_search_vector", "search_vector", postgresql_using="gin"),
        Index(
            "ix_tasks_embedding_pending",
            "created_at",
            "id",
            postgresql_where=text("embedding IS NULL"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Task(id={self.id}, user_id='{self.user_id}', "
            f"title='[REDACTED]', embedded={self.embedding is not None})>"
        )


@dataclass(frozen=True)
class EntityTable:
    """Physical layout of one searchable entity type."""

    entity_type: EntityType
    model: type[Base]
    table: str
    primary_column: str
    secondary_column: str
    primary_label: str


ENTITY_TABLES: dict[EntityType, EntityTable] = {
    EntityType.EMAIL: EntityTable(
        entity_type=EntityType.EMAIL,
        model=Email,
        table="emails",
        primary_column="subject",
        secondary_column="body",
        primary_label="Subject",
    ),
    EntityType.TASK: EntityTable(
        entity_type=EntityType.TASK,
        model=Task,
        table="tasks",
        primary_column="title",
        secondary_column="description",
        primary_label="Title",
    ),
}


def table_for(entity_type: EntityType | str) -> EntityTable:
    """Resolve an entity type (or its string value) to its table layout."""
    return ENTITY_TABLES[EntityType(entity_type)]
