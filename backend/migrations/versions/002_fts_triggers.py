"""Full-text and trigram search support.

Revision ID: 002_fts_triggers
Revises: 001_initial_schema
Create Date: 2026-10-17

Adds:
- pg_trgm extension
- Weighted search_vector triggers (subject/title A, sender B, body/description C)
  using the text search configuration from TASKMAIL_FTS_CONFIG
- GIN indexes on search_vector
- Trigram GIN indexes on the primary and secondary text columns
"""

from alembic import op
from taskmail.config.loader import get_config

revision = "002_fts_triggers"
down_revision = "001_initial_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    fts = get_config().lexical.fts_config
    op.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")

    op.execute(
        f"""
        CREATE OR REPLACE FUNCTION emails_search_vector_trigger() RETURNS trigger AS $$
        BEGIN
            NEW.search_vector :=
                setweight(to_tsvector('{fts}'::regconfig, COALESCE(NEW.subject, '')), 'A') ||
                setweight(to_tsvector('{fts}'::regconfig, COALESCE(NEW.sender, '')), 'B') ||
                setweight(to_tsvector('{fts}'::regconfig, COALESCE(NEW.body, '')), 'C');
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute("DROP TRIGGER IF EXISTS trig_emails_search_vector ON emails")
    op.execute(
        """
        CREATE TRIGGER trig_emails_search_vector
            BEFORE INSERT OR UPDATE OF subject, sender, body ON emails
            FOR EACH ROW
            EXECUTE FUNCTION emails_search_vector_trigger();
        """
    )

    op.execute(
        f"""
        CREATE OR REPLACE FUNCTION tasks_search_vector_trigger() RETURNS trigger AS $$
        BEGIN
            NEW.search_vector :=
                setweight(to_tsvector('{fts}'::regconfig, COALESCE(NEW.title, '')), 'A') ||
                setweight(to_tsvector('{fts}'::regconfig, COALESCE(NEW.description, '')), 'C');
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute("DROP TRIGGER IF EXISTS trig_tasks_search_vector ON tasks")
    op.execute(
        """
        CREATE TRIGGER trig_tasks_search_vector
            BEFORE INSERT OR UPDATE OF title, description ON tasks
            FOR EACH ROW
            EXECUTE FUNCTION tasks_search_vector_trigger();
        """
    )

    # Backfill documents for rows that predate the triggers.
    op.execute("UPDATE emails SET subject = subject WHERE search_vector IS NULL")
    op.execute("UPDATE tasks SET title = title WHERE search_vector IS NULL")

    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_emails_search_vector "
        "ON emails USING GIN (search_vector)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_tasks_search_vector "
        "ON tasks USING GIN (search_vector)"
    )

    for table, column in (
        ("emails", "subject"),
        ("emails", "body"),
        ("tasks", "title"),
        ("tasks", "description"),
    ):
        op.execute(
            f"CREATE INDEX IF NOT EXISTS ix_{table}_{column}_trgm "
            f"ON {table} USING GIN ({column} gin_trgm_ops)"
        )


def downgrade() -> None:
    for table, column in (
        ("emails", "subject"),
        ("emails", "body"),
        ("tasks", "title"),
        ("tasks", "description"),
    ):
        op.execute(f"DROP INDEX IF EXISTS ix_{table}_{column}_trgm")
    op.execute("DROP INDEX IF EXISTS ix_tasks_search_vector")
    op.execute("DROP INDEX IF EXISTS ix_emails_search_vector")
    op.execute("DROP TRIGGER IF EXISTS trig_tasks_search_vector ON tasks")
    op.execute("DROP FUNCTION IF EXISTS tasks_search_vector_trigger()")
    op.execute("DROP TRIGGER IF EXISTS trig_emails_search_vector ON emails")
    op.execute("DROP FUNCTION IF EXISTS emails_search_vector_trigger()")
