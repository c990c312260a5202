"""deleted_imports

Revision ID: tombstones_001
Revises:
Create Date: 2026-01-26 21:54:32.000000

Creates the tombstone table consulted by import/sync pipelines.

Tables:
  - deleted_imports: one row per (user_id, source, external_id) the user deleted
"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "tombstones_001"
down_revision = None
branch_labels = ("tombstones",)
depends_on = None


def upgrade() -> None:
    # entity_name/entity_email are an audit snapshot only; nothing keys on them.
    op.execute("""
        CREATE TABLE IF NOT EXISTS deleted_imports (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL,
            source TEXT NOT NULL,
            external_id TEXT NOT NULL,
            entity_name TEXT,
            entity_email TEXT,
            inserted_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_deleted_imports_user_source_external
                UNIQUE (user_id, source, external_id)
        )
    """)

    # Sync-time lookups by id (any source) and by source (batch membership).
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_deleted_imports_user_external
            ON deleted_imports (user_id, external_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_deleted_imports_user_source
            ON deleted_imports (user_id, source)
    """)


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS idx_deleted_imports_user_source")
    op.execute("DROP INDEX IF EXISTS idx_deleted_imports_user_external")
    op.execute("DROP TABLE IF EXISTS deleted_imports")
