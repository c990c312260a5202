"""create_entities

Revision ID: core_001
Revises:
Create Date: 2026-01-20 00:00:00.000000

Contact entities and their identifiers. Imported entities carry their
external ids in ``metadata`` (``external_ids`` map, or the legacy
``external_id`` + ``source`` pair).
"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS entities (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            owner_id UUID NOT NULL,
            name TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'person',
            metadata JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_entities_owner
            ON entities (owner_id)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS identifiers (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            entity_id UUID NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
            type TEXT NOT NULL,
            value TEXT NOT NULL,
            is_primary BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_identifiers_entity_type
            ON identifiers (entity_id, type)
    """)


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS idx_identifiers_entity_type")
    op.execute("DROP TABLE IF EXISTS identifiers")
    op.execute("DROP INDEX IF EXISTS idx_entities_owner")
    op.execute("DROP TABLE IF EXISTS entities")
