"""Key-level SQL against the ``deleted_imports`` table.

Every function takes an asyncpg pool or connection (anything exposing
``fetch``/``fetchrow``/``fetchval``/``execute``) as its first argument, so the
same calls work on a pool and inside a caller's transaction. Business rules
live in :mod:`importguard.tombstones.imports`.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from typing import Any

import asyncpg

TABLE = "deleted_imports"

_COLUMNS = "id, user_id, source, external_id, entity_name, entity_email, inserted_at"


async def insert_if_absent(
    pool: Any,
    user_id: uuid.UUID,
    source: str,
    external_id: str,
    entity_name: str | None,
    entity_email: str | None,
) -> asyncpg.Record | None:
    """Insert a tombstone row; return it, or ``None`` when the key already exists.

    ``ON CONFLICT DO NOTHING`` against the unique key means a concurrent
    duplicate never raises and never aborts an enclosing transaction.
    """
    return await pool.fetchrow(
        f"""
        INSERT INTO {TABLE} (user_id, source, external_id, entity_name, entity_email)
        VALUES ($1, $2, $3, $4, $5)
        ON CONFLICT (user_id, source, external_id) DO NOTHING
        RETURNING {_COLUMNS}
        """,
        user_id,
        source,
        external_id,
        entity_name,
        entity_email,
    )


async def fetch_one(
    pool: Any, user_id: uuid.UUID, source: str, external_id: str
) -> asyncpg.Record | None:
    return await pool.fetchrow(
        f"""
        SELECT {_COLUMNS}
        FROM {TABLE}
        WHERE user_id = $1 AND source = $2 AND external_id = $3
        """,
        user_id,
        source,
        external_id,
    )


async def exists(pool: Any, user_id: uuid.UUID, source: str, external_id: str) -> bool:
    return bool(
        await pool.fetchval(
            f"""
            SELECT EXISTS (
                SELECT 1 FROM {TABLE}
                WHERE user_id = $1 AND source = $2 AND external_id = $3
            )
            """,
            user_id,
            source,
            external_id,
        )
    )


async def exists_any(
    pool: Any,
    user_id: uuid.UUID,
    sources: Sequence[str],
    external_ids: Sequence[str],
) -> bool:
    """True if any ``(sources[i], external_ids[i])`` pair is tombstoned for the user."""
    return bool(
        await pool.fetchval(
            f"""
            SELECT EXISTS (
                SELECT 1
                FROM {TABLE} d
                JOIN unnest($2::text[], $3::text[]) AS k(source, external_id)
                  ON d.source = k.source AND d.external_id = k.external_id
                WHERE d.user_id = $1
            )
            """,
            user_id,
            list(sources),
            list(external_ids),
        )
    )


async def select_external_ids(pool: Any, user_id: uuid.UUID, source: str) -> list[str]:
    rows = await pool.fetch(
        f"SELECT external_id FROM {TABLE} WHERE user_id = $1 AND source = $2",
        user_id,
        source,
    )
    return [row["external_id"] for row in rows]


async def select_for_user(
    pool: Any, user_id: uuid.UUID, source: str | None = None
) -> list[asyncpg.Record]:
    if source is None:
        return await pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM {TABLE}
            WHERE user_id = $1
            ORDER BY inserted_at DESC, id
            """,
            user_id,
        )
    return await pool.fetch(
        f"""
        SELECT {_COLUMNS} FROM {TABLE}
        WHERE user_id = $1 AND source = $2
        ORDER BY inserted_at DESC, id
        """,
        user_id,
        source,
    )


async def delete(pool: Any, user_id: uuid.UUID, source: str, external_id: str) -> int:
    """Delete the row for the key and return the number of rows removed."""
    status = await pool.execute(
        f"DELETE FROM {TABLE} WHERE user_id = $1 AND source = $2 AND external_id = $3",
        user_id,
        source,
        external_id,
    )
    # asyncpg returns the command tag, e.g. "DELETE 1".
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except ValueError:
        return 0
